from datetime import datetime, timedelta, timezone

import pytest

from fieldfix.errors import NotFoundError
from fieldfix.models import Event, KBSnapshot, Session
from fieldfix.store import MemoryStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _session(scenario="scenario1", minutes=0):
    return Session(scenario=scenario, user_description="desc", created_at=T0 + timedelta(minutes=minutes))


def _snapshot(session_id, kb_id):
    return KBSnapshot(session_id=session_id, source="manual", kb_id=kb_id, title="t", snippet="s...")


@pytest.mark.asyncio
async def test_create_and_get_returns_copies():
    store = MemoryStore()
    session = await store.create(_session())

    fetched = await store.get(Session, session.id)
    fetched.status = "complete"

    assert (await store.get(Session, session.id)).status == "created"
    assert await store.get(Session, "missing") is None


@pytest.mark.asyncio
async def test_update_requires_existing_record():
    store = MemoryStore()
    with pytest.raises(NotFoundError):
        await store.update(_session())


@pytest.mark.asyncio
async def test_list_for_session_orders_events_by_timestamp():
    store = MemoryStore()
    late = Event(session_id="s1", event_type="B", timestamp=T0 + timedelta(seconds=5))
    early = Event(session_id="s1", event_type="A", timestamp=T0)
    other = Event(session_id="s2", event_type="C", timestamp=T0)
    for event in (late, early, other):
        await store.create(event)

    events = await store.list_for_session(Event, "s1")
    assert [e.event_type for e in events] == ["A", "B"]
    assert (await store.latest_for_session(Event, "s1")).event_type == "B"
    assert await store.latest_for_session(Event, "s3") is None


@pytest.mark.asyncio
async def test_replace_for_session_only_touches_that_session():
    store = MemoryStore()
    await store.create(_snapshot("s1", "OLD"))
    await store.create(_snapshot("s2", "KEEP"))

    await store.replace_for_session(KBSnapshot, "s1", [_snapshot("s1", "NEW-1"), _snapshot("s1", "NEW-2")])

    assert [s.kb_id for s in await store.list_for_session(KBSnapshot, "s1")] == ["NEW-1", "NEW-2"]
    assert [s.kb_id for s in await store.list_for_session(KBSnapshot, "s2")] == ["KEEP"]


@pytest.mark.asyncio
async def test_find_sessions_newest_first():
    store = MemoryStore()
    oldest = await store.create(_session(minutes=0))
    middle = await store.create(_session(minutes=1))
    newest = await store.create(_session(minutes=2))
    await store.create(_session("scenario2", minutes=3))

    found = await store.find_sessions(scenario="scenario1", exclude_id=newest.id)
    assert [s.id for s in found] == [middle.id, oldest.id]

    limited = await store.find_sessions(scenario="scenario1", limit=1)
    assert [s.id for s in limited] == [newest.id]
