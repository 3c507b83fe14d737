import sys
from pathlib import Path

import pytest
from flask import Flask

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app_services import AppServiceConfig, AppServices
from blueprints.api import create_api_blueprint
from record_store import RecordStore
from session_machine import SessionStateMachine
from word_sync import WordSyncService


class FakeTimer:
    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.kwargs = dict(kwargs or {})
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    def __init__(self):
        self.created: list[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        self.created.append(timer)
        return timer

    def live(self) -> list[FakeTimer]:
        return [timer for timer in self.created if timer.started and not timer.cancelled]


def make_config(db_path, **overrides) -> AppServiceConfig:
    values = {
        "db_path": str(db_path),
        "record_api_url": "",
        "standalone": True,
        "round_timer_seconds": 30.0,
        "engine_poll_seconds": 0.5,
        "engine_mode": "off",
        "word_history_scope": "participant",
        "store_timeout_seconds": 5.0,
        "is_prod": False,
    }
    values.update(overrides)
    return AppServiceConfig(**values)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "word_sync_test.db"


@pytest.fixture
def store(db_path):
    return RecordStore(str(db_path), timeout=5.0)


@pytest.fixture
def machine(store):
    return SessionStateMachine(store)


@pytest.fixture
def fake_timers():
    return FakeTimerFactory()


@pytest.fixture
def app_ctx(db_path, store, fake_timers):
    app = Flask(__name__)
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"

    services = AppServices(app=app, config=make_config(db_path))
    word_sync_service = WordSyncService(
        store=store,
        round_seconds=services.effective_round_seconds(),
        history_scope=services.effective_history_scope(),
        metrics=services.record_metric,
        timer_factory=fake_timers,
    )
    services.start_engine(word_sync_service)

    app.before_request(services.start_timer)
    app.after_request(services.log_request)
    app.teardown_request(services.log_exception)
    app.register_blueprint(
        create_api_blueprint(word_sync_service=word_sync_service, services=services)
    )

    yield {
        "app": app,
        "services": services,
        "word_sync_service": word_sync_service,
        "store": store,
    }
    word_sync_service.shutdown()


@pytest.fixture
def app(app_ctx):
    return app_ctx["app"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app_ctx):
    return app_ctx["services"]


@pytest.fixture
def word_sync(app_ctx):
    return app_ctx["word_sync_service"]


@pytest.fixture
def start_game(word_sync):
    """Create a session, fill it and ready everyone up; returns (code, ids)."""

    def _start(names=("Ada", "Bo"), **create_kwargs):
        created = word_sync.create_session(
            capacity=len(names), display_name=names[0], **create_kwargs
        )
        code = created["session_code"]
        ids = [created["participant_id"]]
        for name in names[1:]:
            ids.append(word_sync.join_session(code, name)["participant_id"])
        for pid in ids:
            word_sync.mark_ready(pid)
        return code, ids

    return _start
