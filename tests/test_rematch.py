import time

import pytest

import records
from sync_errors import StoreUnavailable, ValidationError


def _finish_with_match(word_sync, ids, word="beach"):
    for pid in ids:
        word_sync.submit_word(pid, word)


def test_rematch_needs_everyone_and_mints_once(word_sync, machine, store, start_game):
    code, (ada, bo) = start_game(timer_enabled=False, round_limit=5)
    _finish_with_match(word_sync, (ada, bo))

    first = word_sync.request_rematch(ada)
    assert first["successor_code"] is None
    assert first["state"]["can_rematch"] is False

    second = word_sync.request_rematch(bo)
    successor_code = second["successor_code"]
    assert successor_code
    assert machine.get_session(code).successor_code == successor_code

    successor = machine.get_session(successor_code)
    assert successor.status == records.STATUS_WAITING
    assert successor.round_limit == 5
    assert successor.capacity == 2

    bo_next = second["successor_participant_id"]
    assert store.get(records.KIND_PARTICIPANT, bo_next).display_name == "Bo"

    ada_view = word_sync.get_state(code, ada)
    ada_next = ada_view["successor_participant_id"]
    assert ada_next and ada_next != bo_next
    assert store.get(records.KIND_PARTICIPANT, ada_next).predecessor_id == ada

    # Asking again returns the same successor instead of minting another.
    assert word_sync.request_rematch(ada)["successor_code"] == successor_code
    assert store.count(records.KIND_SESSION) == 2


def test_successor_session_plays_normally(word_sync, machine, start_game):
    code, ids = start_game()
    _finish_with_match(word_sync, ids)
    for pid in ids:
        result = word_sync.request_rematch(pid)
    new_ids = [word_sync.rematch.successor_identity(pid) for pid in ids]
    new_code = result["successor_code"]

    for pid in new_ids:
        word_sync.mark_ready(pid)
    assert machine.get_session(new_code).status == records.STATUS_ACTIVE

    # Word history does not carry over to the new session.
    _finish_with_match(word_sync, new_ids, word="beach")
    assert machine.get_session(new_code).is_won


def test_rematch_only_after_finish(word_sync, start_game):
    _, (ada, _bo) = start_game()
    with pytest.raises(ValidationError) as excinfo:
        word_sync.request_rematch(ada)
    assert excinfo.value.status_code == 409


def test_rematch_for_remaining_players_after_departure(word_sync, machine, start_game):
    code, (ada, bo) = start_game()
    _finish_with_match(word_sync, (ada, bo))

    word_sync.leave(bo)
    result = word_sync.request_rematch(ada)

    assert result["successor_code"]
    assert machine.get_session(code).abandoned is False
    assert len(machine.list_participants(result["successor_code"])) == 1


def test_released_claim_allows_retry(word_sync, machine, monkeypatch, start_game):
    code, (ada, bo) = start_game()
    _finish_with_match(word_sync, (ada, bo))
    word_sync.request_rematch(ada)

    def broken_create(*_args, **_kwargs):
        raise RuntimeError("store hiccup")

    monkeypatch.setattr(machine.__class__, "create_session", broken_create)
    with pytest.raises(RuntimeError):
        word_sync.request_rematch(bo)
    monkeypatch.undo()

    session = machine.get_session(code)
    assert session.rematch_claim is None
    assert session.successor_code is None

    assert word_sync.rematch.evaluate(code)


def test_failed_participant_copy_leaves_no_partial_successor(
    word_sync, machine, store, monkeypatch, start_game
):
    code, (ada, bo) = start_game()
    _finish_with_match(word_sync, (ada, bo))
    word_sync.request_rematch(ada)

    original_insert = store.insert
    copied = []

    def flaky_insert(record, *args, **kwargs):
        if isinstance(record, records.Participant):
            copied.append(record.participant_id)
            if len(copied) == 2:
                raise StoreUnavailable("database is locked")
        return original_insert(record, *args, **kwargs)

    monkeypatch.setattr(store, "insert", flaky_insert)
    with pytest.raises(StoreUnavailable):
        word_sync.request_rematch(bo)
    monkeypatch.undo()

    assert store.count(records.KIND_SESSION) == 1
    assert store.query(records.KIND_PARTICIPANT, {"predecessor_id": [ada, bo]}) == []
    assert machine.get_session(code).rematch_claim is None

    successor_code = word_sync.rematch.evaluate(code)
    assert successor_code
    assert store.count(records.KIND_SESSION) == 2
    assert len(machine.list_participants(successor_code)) == 2


def test_stale_claim_is_taken_over(word_sync, machine, store, start_game):
    code, (ada, bo) = start_game()
    _finish_with_match(word_sync, (ada, bo))
    word_sync.request_rematch(ada)

    # Another process claimed the mint and died after building half a session.
    store.update(
        records.KIND_SESSION,
        code,
        {"rematch_claim": None},
        {"rematch_claim": "gone-owner", "rematch_claimed_at": time.time()},
    )
    store.put(records.Session(code="ORPHN", capacity=2))
    store.put(
        records.Participant(
            participant_id="orphan-ada",
            session_code="ORPHN",
            display_name="Ada",
            predecessor_id=ada,
        )
    )

    assert word_sync.request_rematch(bo)["successor_code"] is None
    assert machine.get_session(code).rematch_claim == "gone-owner"

    store.update(
        records.KIND_SESSION,
        code,
        {"rematch_claim": "gone-owner"},
        {"rematch_claimed_at": time.time() - 3600},
    )
    successor_code = word_sync.rematch.evaluate(code)

    assert successor_code and successor_code != "ORPHN"
    session = machine.get_session(code)
    assert session.successor_code == successor_code
    assert session.rematch_claim not in (None, "gone-owner")
    assert machine.get_session("ORPHN") is None
    assert store.get(records.KIND_PARTICIPANT, "orphan-ada") is None
    assert store.count(records.KIND_SESSION) == 2
    assert word_sync.rematch.successor_identity(ada) in {
        p.participant_id for p in machine.list_participants(successor_code)
    }
