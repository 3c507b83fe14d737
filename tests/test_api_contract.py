def _create(client, **payload):
    body = {"capacity": 2, "display_name": "Ada"}
    body.update(payload)
    response = client.post("/api/word-sync/sessions", json=body)
    assert response.status_code == 201
    return response.get_json()


def _start_two_player_game(client):
    created = _create(client)
    code = created["session_code"]
    joined = client.post(f"/api/word-sync/sessions/{code}/join", json={"display_name": "Bo"})
    assert joined.status_code == 200
    ada = created["participant_id"]
    bo = joined.get_json()["participant_id"]
    for pid in (ada, bo):
        assert client.post(f"/api/word-sync/participants/{pid}/ready").status_code == 200
    return code, ada, bo


def test_api_contract_endpoints(client):
    bootstrap = client.get("/api/word-sync/bootstrap")
    assert bootstrap.status_code == 200
    payload = bootstrap.get_json()
    assert payload["min_players"] == 2
    assert payload["max_players"] == 4
    assert payload["round_seconds"] == 30

    recent = client.get("/api/word-sync/recent-matches")
    assert recent.status_code == 200
    assert recent.get_json() == {"matches": []}

    metrics = client.get("/api/ops/metrics")
    assert metrics.status_code == 200
    assert metrics.get_json()["metrics"]["engine_mode"] == "off"


def test_api_full_game_flow(client):
    code, ada, bo = _start_two_player_game(client)

    state = client.get(f"/api/word-sync/sessions/{code}", query_string={"participant_id": ada})
    assert state.status_code == 200
    assert state.get_json()["session"]["status"] == "active"
    assert state.get_json()["can_submit"] is True

    submitted = client.post(f"/api/word-sync/participants/{ada}/submit", json={"word": "Beach"})
    assert submitted.status_code == 200
    assert submitted.get_json()["accepted"] is True
    assert submitted.get_json()["word"] == "beach"

    # Bo cannot see Ada's pending word.
    bo_view = client.get(
        f"/api/word-sync/sessions/{code}", query_string={"participant_id": bo}
    ).get_json()
    ada_entry = next(p for p in bo_view["participants"] if p["participant_id"] == ada)
    assert ada_entry["submitted"] is True
    assert ada_entry["current_word"] is None
    assert bo_view["history"] == []

    finished = client.post(f"/api/word-sync/participants/{bo}/submit", json={"word": "beach"})
    final_state = finished.get_json()["state"]
    assert final_state["session"]["status"] == "finished"
    assert final_state["session"]["winner"] == "Bo"
    assert final_state["session"]["rounds_taken"] == 1
    assert final_state["history"][0]["round_number"] == 1
    assert {w["word"] for w in final_state["history"][0]["words"]} == {"beach"}
    assert final_state["can_rematch"] is True

    client.post(f"/api/word-sync/participants/{ada}/rematch")
    rematch = client.post(f"/api/word-sync/participants/{bo}/rematch")
    assert rematch.status_code == 200
    rematch_payload = rematch.get_json()
    assert rematch_payload["successor_code"]
    assert rematch_payload["successor_participant_id"]

    matches = client.get("/api/word-sync/recent-matches").get_json()["matches"]
    assert matches[0]["session_code"] == code
    assert matches[0]["starting_words"] == ["beach", "beach"]
    assert matches[0]["matched_word"] == "beach"


def test_api_error_envelopes(client):
    missing = client.post("/api/word-sync/sessions/ZZZZZ/join", json={"display_name": "Bo"})
    assert missing.status_code == 404
    assert missing.get_json()["code"] == "not_found"
    assert missing.get_json()["error"] == missing.get_json()["message"]

    bad_capacity = client.post("/api/word-sync/sessions", json={"capacity": 9})
    assert bad_capacity.status_code == 400
    assert bad_capacity.get_json()["code"] == "invalid_request"

    created = _create(client)
    code = created["session_code"]
    client.post(f"/api/word-sync/sessions/{code}/join", json={"display_name": "Bo"})
    full = client.post(f"/api/word-sync/sessions/{code}/join", json={"display_name": "Cy"})
    assert full.status_code == 409
    assert "full" in full.get_json()["message"].lower()

    stranger = client.get(
        f"/api/word-sync/sessions/{code}", query_string={"participant_id": "someone-else"}
    )
    assert stranger.status_code == 403

    unknown = client.post("/api/word-sync/participants/nobody/ready")
    assert unknown.status_code == 404


def test_api_duplicate_word_and_started_join(client):
    code, ada, bo = _start_two_player_game(client)

    late = client.post(f"/api/word-sync/sessions/{code}/join", json={"display_name": "Cy"})
    assert late.status_code == 409
    assert late.get_json()["code"] == "conflict"

    client.post(f"/api/word-sync/participants/{ada}/submit", json={"word": "beach"})
    client.post(f"/api/word-sync/participants/{bo}/submit", json={"word": "wave"})

    duplicate = client.post(f"/api/word-sync/participants/{ada}/submit", json={"word": "BEACH"})
    assert duplicate.status_code == 409
    body = duplicate.get_json()
    assert body["code"] == "duplicate_word"
    assert body["details"] == {"word": "beach", "round_number": 1}

    empty = client.post(f"/api/word-sync/participants/{ada}/submit", json={"word": "  "})
    assert empty.status_code == 400


def test_api_leave_closes_lobby(client, services):
    created = _create(client)
    left = client.post(f"/api/word-sync/participants/{created['participant_id']}/leave")
    assert left.status_code == 200
    assert left.get_json()["session_closed"] is True

    gone = client.post(
        f"/api/word-sync/sessions/{created['session_code']}/join", json={"display_name": "Bo"}
    )
    assert gone.status_code == 404
    assert services.get_runtime_metrics()["sessions_created"] == 1


def test_api_store_outage_is_reported_as_unavailable(
    client, word_sync, services, monkeypatch
):
    from sync_errors import StoreUnavailable

    def unavailable():
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(word_sync, "bootstrap", unavailable)
    response = client.get("/api/word-sync/bootstrap")
    assert response.status_code == 503
    assert response.get_json()["code"] == "word_sync_unavailable"
    assert "locked" not in response.get_json()["message"]
    assert services.get_runtime_metrics()["store_last_error"] == "database is locked"
