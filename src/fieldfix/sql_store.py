# sql_store.py
# SQLAlchemy (asyncio) implementation of the record store.
#
# One generic `records` table holds every entity as a JSON payload, indexed
# by kind, id and session id. Works against SQLite via aiosqlite for local
# runs and any async SQLAlchemy driver in production.

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import JSON, DateTime, Integer, String, delete, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fieldfix.errors import NotFoundError, SchemaMissingError
from fieldfix.log import get_logger
from fieldfix.models import Session
from fieldfix.store import R, RecordStore, kind_of, order_key

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class RecordRow(Base):
    __tablename__ = "records"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    ordered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


def _is_missing_table(exc: DBAPIError) -> bool:
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == "42P01" or getattr(orig, "pgcode", None) == "42P01":
        return True
    message = str(orig).lower()
    return "no such table" in message or ("relation" in message and "does not exist" in message)


def _row_for(record) -> RecordRow:
    return RecordRow(
        id=record.id,
        kind=kind_of(record),
        session_id=getattr(record, "session_id", None),
        ordered_at=order_key(record),
        payload=record.model_dump(mode="json", by_alias=True),
    )


class SqlStore(RecordStore):
    """
    Record store over an async SQLAlchemy engine.

    Example:
        store = SqlStore("sqlite+aiosqlite:///fieldfix.db")
        await store.create_schema()
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self._engine = create_async_engine(url, echo=echo)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            try:
                yield session
            except DBAPIError as exc:
                await session.rollback()
                if _is_missing_table(exc):
                    logger.error("store schema missing at %s: %s", self.url, exc.orig)
                    raise SchemaMissingError(
                        "Database tables are missing. Run the schema setup before using the pipeline.",
                        code=SchemaMissingError.code,
                    ) from exc
                raise

    # ------------------------------------------------------------------
    # RecordStore
    # ------------------------------------------------------------------

    async def create(self, record: R) -> R:
        async with self._session() as session:
            session.add(_row_for(record))
            await session.commit()
        return record

    async def _row(self, session: AsyncSession, kind: str, record_id: str) -> RecordRow | None:
        result = await session.execute(select(RecordRow).where(RecordRow.kind == kind, RecordRow.id == record_id))
        return result.scalar_one_or_none()

    async def get(self, model: type[R], record_id: str) -> R | None:
        async with self._session() as session:
            row = await self._row(session, kind_of(model), record_id)
            return model.model_validate(row.payload) if row is not None else None

    async def update(self, record: R) -> R:
        async with self._session() as session:
            row = await self._row(session, kind_of(record), record.id)
            if row is None:
                raise NotFoundError(f"{kind_of(record)} {record.id} not found")
            row.payload = record.model_dump(mode="json", by_alias=True)
            await session.commit()
        return record

    async def list_for_session(self, model: type[R], session_id: str) -> list[R]:
        async with self._session() as session:
            result = await session.execute(
                select(RecordRow)
                .where(RecordRow.kind == kind_of(model), RecordRow.session_id == session_id)
                .order_by(RecordRow.ordered_at, RecordRow.seq)
            )
            return [model.model_validate(row.payload) for row in result.scalars()]

    async def replace_for_session(self, model: type[R], session_id: str, records: list[R]) -> list[R]:
        async with self._session() as session:
            await session.execute(
                delete(RecordRow).where(RecordRow.kind == kind_of(model), RecordRow.session_id == session_id)
            )
            session.add_all([_row_for(record) for record in records])
            await session.commit()
        return records

    async def find_sessions(
        self, *, scenario: str | None = None, exclude_id: str | None = None, limit: int | None = None
    ) -> list[Session]:
        async with self._session() as session:
            result = await session.execute(
                select(RecordRow)
                .where(RecordRow.kind == kind_of(Session))
                .order_by(RecordRow.ordered_at.desc(), RecordRow.seq.desc())
            )
            sessions = [Session.model_validate(row.payload) for row in result.scalars()]

        sessions = [s for s in sessions if (scenario is None or s.scenario == scenario) and s.id != exclude_id]
        return sessions[:limit] if limit is not None else sessions
