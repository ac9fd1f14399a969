# store.py
# Record store contract plus the in-process implementation.
#
# Storage is generic: every entity is a pydantic Record keyed by id and
# (except Session) by the owning session id. Stages only use the operations
# below, so the SQL-backed store in sql_store.py is a drop-in replacement.

import abc
from datetime import datetime
from typing import TypeVar

from fieldfix.errors import NotFoundError
from fieldfix.models import Record, Session

R = TypeVar("R", bound=Record)


def order_key(record: Record) -> datetime:
    """Events order by timestamp, everything else by creation time."""
    return getattr(record, "timestamp", None) or record.created_at


def kind_of(model: type[Record] | Record) -> str:
    return model.__name__ if isinstance(model, type) else type(model).__name__


class RecordStore(abc.ABC):
    """Async create/read/update store for pipeline records."""

    @abc.abstractmethod
    async def create(self, record: R) -> R: ...

    @abc.abstractmethod
    async def get(self, model: type[R], record_id: str) -> R | None: ...

    @abc.abstractmethod
    async def update(self, record: R) -> R:
        """Overwrite an existing record. Raises NotFoundError if it was never created."""

    @abc.abstractmethod
    async def list_for_session(self, model: type[R], session_id: str) -> list[R]:
        """All records of one kind for a session, oldest first."""

    @abc.abstractmethod
    async def replace_for_session(self, model: type[R], session_id: str, records: list[R]) -> list[R]:
        """Delete every record of this kind for the session, then create `records`."""

    @abc.abstractmethod
    async def find_sessions(
        self, *, scenario: str | None = None, exclude_id: str | None = None, limit: int | None = None
    ) -> list[Session]:
        """Sessions, newest first, optionally filtered by scenario."""

    async def latest_for_session(self, model: type[R], session_id: str) -> R | None:
        records = await self.list_for_session(model, session_id)
        return records[-1] if records else None

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------


class MemoryStore(RecordStore):
    """
    Dict-backed store for tests and single-process demos.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state in place.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Record]] = {}

    def _table(self, model: type[Record] | Record) -> dict[str, Record]:
        return self._tables.setdefault(kind_of(model), {})

    async def create(self, record: R) -> R:
        self._table(record)[record.id] = record.model_copy(deep=True)
        return record

    async def get(self, model: type[R], record_id: str) -> R | None:
        found = self._table(model).get(record_id)
        return found.model_copy(deep=True) if found is not None else None

    async def update(self, record: R) -> R:
        table = self._table(record)
        if record.id not in table:
            raise NotFoundError(f"{kind_of(record)} {record.id} not found")
        table[record.id] = record.model_copy(deep=True)
        return record

    async def list_for_session(self, model: type[R], session_id: str) -> list[R]:
        rows = [r for r in self._table(model).values() if getattr(r, "session_id", None) == session_id]
        return [r.model_copy(deep=True) for r in sorted(rows, key=order_key)]

    async def replace_for_session(self, model: type[R], session_id: str, records: list[R]) -> list[R]:
        table = self._table(model)
        for record_id in [k for k, r in table.items() if getattr(r, "session_id", None) == session_id]:
            del table[record_id]
        for record in records:
            table[record.id] = record.model_copy(deep=True)
        return records

    async def find_sessions(
        self, *, scenario: str | None = None, exclude_id: str | None = None, limit: int | None = None
    ) -> list[Session]:
        sessions = [
            s
            for s in self._table(Session).values()
            if (scenario is None or s.scenario == scenario) and s.id != exclude_id
        ]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        if limit is not None:
            sessions = sessions[:limit]
        return [s.model_copy(deep=True) for s in sessions]
