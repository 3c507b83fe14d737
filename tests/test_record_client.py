from urllib.parse import urlsplit

import pytest
import requests

import records
from record_api_server import create_record_api
from record_client import RecordClient, get_record_client
from record_store import CountWithin, Expect
from sync_errors import StoreUnavailable, ValidationError


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


@pytest.fixture
def remote_client(monkeypatch, store):
    """A remote-mode client whose HTTP calls land on an in-process store API."""
    api = create_record_api(store)
    api.config["TESTING"] = True
    api_client = api.test_client()

    def _forward(method):
        def _call(url, params=None, json=None, timeout=10):
            path = urlsplit(url).path
            response = api_client.open(
                path, method=method, query_string=params, json=json
            )
            return FakeResponse(response.get_json(), response.status_code)

        return _call

    monkeypatch.setattr("record_client.requests.get", _forward("GET"))
    monkeypatch.setattr("record_client.requests.post", _forward("POST"))
    monkeypatch.setattr("record_client.requests.put", _forward("PUT"))
    return RecordClient(base_url="http://store.example.com", db_path="unused.db")


def test_record_client_local_mode_uses_sqlite(db_path):
    client = RecordClient(base_url=None, db_path=str(db_path))
    assert not client.is_remote
    assert client.insert(records.Session(code="LOCAL", capacity=2))
    assert client.get(records.KIND_SESSION, "LOCAL").capacity == 2
    assert client.db_path == str(db_path)


def test_record_client_remote_round_trip(remote_client, store):
    session = records.Session(code="REMOT", capacity=3, timer_enabled=True)
    assert remote_client.insert(session)
    assert remote_client.insert(session) is False

    assert store.get(records.KIND_SESSION, "REMOT").timer_enabled is True
    assert remote_client.get(records.KIND_SESSION, "REMOT") == session
    assert remote_client.get(records.KIND_SESSION, "MISSN") is None

    remote_client.put(records.Participant("p1", "REMOT", "Ada", joined_at=1.0))
    joined = remote_client.insert(
        records.Participant("p2", "REMOT", "Bo", joined_at=2.0),
        guards=(
            Expect(records.KIND_SESSION, "REMOT", {"status": [records.STATUS_WAITING]}),
            CountWithin(records.KIND_PARTICIPANT, {"session_code": "REMOT"}, maximum=2),
        ),
    )
    assert joined
    assert remote_client.count(records.KIND_PARTICIPANT, {"session_code": "REMOT"}) == 2
    names = [
        p.display_name
        for p in remote_client.query(
            records.KIND_PARTICIPANT, {"session_code": "REMOT"}, order_by="-joined_at"
        )
    ]
    assert names == ["Bo", "Ada"]

    assert remote_client.update(
        records.KIND_SESSION,
        "REMOT",
        {"status": records.STATUS_WAITING, "successor_code": None},
        {"status": records.STATUS_ACTIVE},
    )
    assert (
        remote_client.update(
            records.KIND_SESSION,
            "REMOT",
            {"status": records.STATUS_WAITING},
            {"status": records.STATUS_ACTIVE},
        )
        is False
    )
    assert remote_client.update_where(
        records.KIND_PARTICIPANT, {"session_code": "REMOT"}, {"ready_to_start": True}
    ) == 2
    assert remote_client.delete(records.KIND_PARTICIPANT, "p2")
    assert remote_client.delete_where(records.KIND_PARTICIPANT, {"session_code": "REMOT"}) == 1


def test_record_client_remote_change_feed(remote_client, store):
    subscription = remote_client.subscribe(session_code="FEEDS")
    store.put(records.Session(code="FEEDS", capacity=2))
    store.put(records.Session(code="OTHER", capacity=2))

    events = subscription.poll()
    assert len(events) == 1
    assert events[0].kind == records.KIND_SESSION
    assert events[0].key == ("FEEDS",)
    assert remote_client.latest_sequence() == store.latest_sequence()


def test_record_client_remote_bad_request_is_validation_error(remote_client):
    with pytest.raises(ValidationError):
        remote_client.query(records.KIND_SESSION, {"not_a_field": 1})


def test_record_client_network_failure_is_store_unavailable(monkeypatch):
    def fake_post(url, json=None, timeout=10):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("record_client.requests.post", fake_post)

    client = RecordClient(base_url="http://store.example.com", db_path="unused.db")
    with pytest.raises(StoreUnavailable) as excinfo:
        client.count(records.KIND_SESSION)
    assert excinfo.value.status_code == 503


def test_record_client_remote_request_shape(monkeypatch):
    captured = {}

    def fake_post(url, json=None, timeout=10):
        captured["url"] = url
        captured["json"] = json
        captured["timeout"] = timeout
        return FakeResponse({"updated": True})

    monkeypatch.setattr("record_client.requests.post", fake_post)

    client = RecordClient(base_url="http://store.example.com/", db_path="unused.db", timeout=3)
    assert client.update(
        records.KIND_SESSION,
        "ABCDE",
        {"status": ("waiting", "ready")},
        {"status": "active"},
    )
    assert captured["url"] == "http://store.example.com/api/records/session/update"
    assert captured["json"]["key"] == ["ABCDE"]
    assert captured["json"]["expected"] == {"status": ["waiting", "ready"]}
    assert captured["timeout"] == 3.0


def test_get_record_client_respects_standalone(monkeypatch, tmp_path):
    monkeypatch.setenv("RECORD_API_URL", "http://store.example.com")
    monkeypatch.setenv("WORD_SYNC_DB", str(tmp_path / "env.db"))
    monkeypatch.setenv("APP_STANDALONE", "true")
    assert not get_record_client().is_remote

    monkeypatch.setenv("APP_STANDALONE", "false")
    assert get_record_client().base_url == "http://store.example.com"
