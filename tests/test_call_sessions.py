import asyncio

import pytest

from services.call_ids import CallIdNormalizer
from services.call_sessions import (
    CallStatus, MissingIdentifier, Milestone, SessionReaper, SessionStore
)

from conftest import LONG_ID, SHORT_ID


def make_store(ttl: float = 60) -> SessionStore:
    return SessionStore(CallIdNormalizer(), SessionReaper(ttl))


@pytest.mark.asyncio
async def test_get_or_create_returns_same_object():
    store = make_store()
    first = store.get_or_create(SHORT_ID)
    second = store.get_or_create(SHORT_ID)

    assert first is second
    assert first.status is CallStatus.INITIALIZING
    assert first.milestones == set()
    assert store.reaper.is_scheduled(SHORT_ID)
    store.clear()


@pytest.mark.asyncio
async def test_missing_identifier_is_refused():
    store = make_store()
    with pytest.raises(MissingIdentifier):
        store.get_or_create(None)
    with pytest.raises(MissingIdentifier):
        store.get_or_create("")
    assert len(store) == 0


@pytest.mark.asyncio
async def test_patient_filled_in_later():
    store = make_store()
    session = store.get_or_create(SHORT_ID)
    assert session.patient is None

    store.get_or_create(SHORT_ID, patient="patient-a")
    store.get_or_create(SHORT_ID, patient="patient-b")
    assert session.patient == "patient-a"
    store.clear()


@pytest.mark.asyncio
async def test_milestones_are_idempotent():
    store = make_store()
    session = store.get_or_create(SHORT_ID)

    assert session.mark(Milestone.CONNECTED) is True
    assert session.mark(Milestone.CONNECTED) is False
    assert session.milestones == {Milestone.CONNECTED}
    with pytest.raises(ValueError):
        session.mark(Milestone.GREETING_PLAYED)
    store.clear()


@pytest.mark.asyncio
async def test_greeting_latch_fires_once_and_can_be_released():
    store = make_store()
    session = store.get_or_create(SHORT_ID, patient="patient")
    assert session.try_latch_greeting() is False

    for milestone in (Milestone.CONNECTED, Milestone.STARTED, Milestone.PARTICIPANT_ADDED):
        session.mark(milestone)

    assert session.try_latch_greeting() is True
    assert session.try_latch_greeting() is False

    session.release_greeting()
    assert not session.has(Milestone.GREETING_PLAYED)
    assert session.try_latch_greeting() is True
    store.clear()


@pytest.mark.asyncio
async def test_latch_requires_patient():
    store = make_store()
    session = store.get_or_create(SHORT_ID)
    for milestone in (Milestone.CONNECTED, Milestone.STARTED, Milestone.PARTICIPANT_ADDED):
        session.mark(milestone)
    assert session.try_latch_greeting() is False
    store.clear()


@pytest.mark.asyncio
async def test_remove_drops_session_and_aliases():
    store = make_store()
    canonical = store.normalizer.normalize(SHORT_ID)
    store.normalizer.normalize(LONG_ID)
    session = store.get_or_create(canonical)

    removed = store.remove(canonical)

    assert removed is session
    assert session.status is CallStatus.ENDED
    assert store.resolve(SHORT_ID) is None
    assert store.resolve(LONG_ID) is None
    assert not store.reaper.is_scheduled(canonical)
    assert len(store.normalizer) == 0


@pytest.mark.asyncio
async def test_session_reaped_at_ttl():
    store = make_store(ttl=0.05)
    canonical = store.normalizer.normalize(SHORT_ID)
    store.normalizer.normalize(LONG_ID)
    store.get_or_create(canonical)

    await asyncio.sleep(0.01)
    assert store.resolve(LONG_ID) is not None

    await asyncio.sleep(0.1)
    assert canonical not in store
    assert store.resolve(SHORT_ID) is None
    assert store.resolve(LONG_ID) is None
    assert not store.reaper.is_scheduled(canonical)


@pytest.mark.asyncio
async def test_reaper_keeps_existing_timer():
    reaper = SessionReaper(60)
    first = reaper.schedule(SHORT_ID, lambda cid: None)
    second = reaper.schedule(SHORT_ID, lambda cid: None)
    assert first is second
    assert reaper.cancel(SHORT_ID) is True
    assert reaper.cancel(SHORT_ID) is False


@pytest.mark.asyncio
async def test_snapshot_reports_metrics():
    store = make_store()
    session = store.get_or_create(SHORT_ID)
    session.add_turn('assistant', "Hello")
    session.add_turn('user', "Hi")
    session.recognition_attempts = 2

    snapshot = session.snapshot()

    assert snapshot['callId'] == SHORT_ID
    assert snapshot['turns'] == 2
    assert snapshot['recognitionAttempts'] == 2
    assert snapshot['milestones'] == {
        'connected': False, 'started': False, 'participantAdded': False, 'greetingPlayed': False
    }
    assert session.user_turns() == 1
    store.clear()


@pytest.mark.asyncio
async def test_link_moves_session_and_timer():
    store = make_store()
    store.normalizer.normalize("first-id")
    session = store.get_or_create("first-id")
    session.mark(Milestone.STARTED)

    assert store.link("first-id", SHORT_ID) is session

    assert session.canonical_id == SHORT_ID
    assert store.get("first-id") is None
    assert store.get(SHORT_ID) is session
    assert store.resolve("first-id") is session
    assert store.reaper.is_scheduled(SHORT_ID)
    assert not store.reaper.is_scheduled("first-id")
    store.clear()


@pytest.mark.asyncio
async def test_link_folds_state_recorded_under_both_ids():
    store = make_store()
    for call_id in ("first-id", SHORT_ID):
        store.normalizer.normalize(call_id)
    early = store.get_or_create("first-id")
    early.mark(Milestone.STARTED)
    early.participants.add("+15551234567")
    current = store.get_or_create(SHORT_ID)
    current.mark(Milestone.CONNECTED)

    assert store.link("first-id", SHORT_ID) is current

    assert current.milestones == {Milestone.CONNECTED, Milestone.STARTED}
    assert current.participants == {"+15551234567"}
    assert len(store) == 1
    assert not store.reaper.is_scheduled("first-id")
    store.clear()
