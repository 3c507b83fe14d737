import time

import pytest

import records
from conftest import FakeTimerFactory
from sync_engine import SyncEngine
from sync_errors import DuplicateWordError, StoreUnavailable


def _ready_pair(store, machine):
    session = machine.create_session(2)
    for index, name in enumerate(("Ada", "Bo")):
        store.insert(
            records.Participant(
                participant_id=f"p{index}",
                session_code=session.code,
                display_name=name,
                ready_to_start=True,
                joined_at=float(index),
            )
        )
    assert machine.try_start(session.code) is True
    return session.code


def test_engine_pump_resolves_rounds_written_elsewhere(store, machine):
    code = _ready_pair(store, machine)
    engine = SyncEngine(store, timer_factory=FakeTimerFactory())

    assert engine.pump() == 0
    store.insert(records.Submission(code, "p0", 1, "beach", submitted_at=1.0))
    store.insert(records.Submission(code, "p1", 1, "wave", submitted_at=2.0))

    assert engine.pump() == 2
    assert machine.get_session(code).round_number == 2

    # The advance itself shows up on the next pass and settles nothing new.
    assert engine.pump() > 0
    assert engine.pump() == 0
    assert machine.get_session(code).round_number == 2


def test_engine_pump_redelivers_after_handler_failure(store, machine, monkeypatch):
    code = _ready_pair(store, machine)
    engine = SyncEngine(store, timer_factory=FakeTimerFactory())
    store.insert(records.Submission(code, "p0", 1, "beach", submitted_at=1.0))
    store.insert(records.Submission(code, "p1", 1, "beach", submitted_at=2.0))

    def broken_resolve(_code):
        raise RuntimeError("resolver down")

    monkeypatch.setattr(engine.resolver, "resolve", broken_resolve)
    with pytest.raises(RuntimeError):
        engine.pump()
    assert machine.get_session(code).status == records.STATUS_ACTIVE

    monkeypatch.undo()
    engine.pump()
    session = machine.get_session(code)
    assert session.is_won
    assert session.winner == "Bo"


def test_engine_can_follow_a_single_session(store, machine):
    watched = _ready_pair(store, machine)
    engine = SyncEngine(
        store, session_code=watched, from_sequence=0, timer_factory=FakeTimerFactory()
    )
    other = machine.create_session(2)
    store.insert(records.Participant("x1", other.code, "Cy"))

    engine.pump()
    assert engine.roster.last_count(watched) == 2
    assert engine.roster.last_count(other.code) is None


def test_background_loop_resolves_and_stops(store, machine):
    code = _ready_pair(store, machine)
    engine = SyncEngine(store, poll_interval=0.05, timer_factory=FakeTimerFactory())
    engine.start()
    try:
        assert engine.running is True
        store.insert(records.Submission(code, "p0", 1, "tide", submitted_at=1.0))
        store.insert(records.Submission(code, "p1", 1, "tide", submitted_at=2.0))

        deadline = time.time() + 5
        while time.time() < deadline and not machine.get_session(code).is_won:
            time.sleep(0.02)
    finally:
        engine.stop()

    assert machine.get_session(code).is_won
    assert engine.running is False


def test_background_loop_counts_errors(store, monkeypatch):
    counted = []
    engine = SyncEngine(
        store, poll_interval=0.05, metrics=counted.append, timer_factory=FakeTimerFactory()
    )

    def failing_pump():
        raise RuntimeError("feed broke")

    monkeypatch.setattr(engine, "pump", failing_pump)
    engine.start()
    deadline = time.time() + 5
    while time.time() < deadline and not counted:
        time.sleep(0.02)
    engine.stop()

    assert "engine_loop_errors" in counted


def test_runtime_metrics_track_a_full_game(word_sync, services, start_game):
    code, (ada, bo) = start_game()
    word_sync.submit_word(ada, "beach")
    word_sync.submit_word(bo, "wave")
    word_sync.submit_word(ada, "surf")
    word_sync.submit_word(bo, "surf")

    metrics = services.get_runtime_metrics()
    assert metrics["sessions_created"] == 1
    assert metrics["words_submitted"] == 4
    assert metrics["rounds_advanced"] == 1
    assert metrics["sessions_won"] == 1
    assert metrics["sessions_abandoned"] == 0
    assert metrics["engine_running"] is False
    assert metrics["engine_mode"] == "off"
    assert metrics["active_countdowns"] == 0
    assert metrics["word_history_scope"] == "participant"
    assert metrics["store_last_error"] == ""


def test_duplicate_rejections_are_counted(word_sync, services, start_game):
    _, (ada, bo) = start_game()
    word_sync.submit_word(ada, "beach")
    word_sync.submit_word(bo, "wave")
    with pytest.raises(DuplicateWordError):
        word_sync.submit_word(ada, "beach")
    assert services.get_runtime_metrics()["duplicate_words_rejected"] == 1


def test_engine_loop_store_errors_reach_runtime_status(store, services, monkeypatch):
    engine = SyncEngine(store, poll_interval=0.05, timer_factory=FakeTimerFactory())
    engine.add_error_listener(services.record_store_error)

    def offline_pump():
        raise StoreUnavailable("store offline")

    monkeypatch.setattr(engine, "pump", offline_pump)
    engine.start()
    deadline = time.time() + 5
    while time.time() < deadline and not services.get_runtime_metrics()["store_last_error"]:
        time.sleep(0.02)
    engine.stop()

    assert services.get_runtime_metrics()["store_last_error"] == "store offline"

    # Other failures are counted but do not overwrite the store status.
    services.record_store_error(RuntimeError("unrelated"))
    assert services.get_runtime_metrics()["store_last_error"] == "store offline"


def test_settled_sessions_are_forgotten(word_sync, machine, start_game):
    roster = word_sync.engine.roster

    code, (ada, bo) = start_game()
    word_sync.submit_word(ada, "beach")
    word_sync.submit_word(bo, "beach")
    assert roster.last_count(code) == 2

    word_sync.request_rematch(ada)
    assert roster.last_count(code) == 2
    word_sync.request_rematch(bo)
    assert machine.get_session(code).successor_code
    assert roster.last_count(code) is None

    other, (cy, dee) = start_game(names=("Cy", "Dee"))
    word_sync.submit_word(cy, "tide")
    word_sync.submit_word(dee, "tide")
    word_sync.leave(cy)
    assert roster.last_count(other) == 1
    word_sync.leave(dee)
    assert roster.last_count(other) is None
    assert machine.get_session(other).is_won
