from __future__ import annotations

import logging
import os
import re
import threading
import time as timelib
from dataclasses import dataclass

from flask import g, request

from round_resolver import HISTORY_SCOPES
from sync_errors import StoreUnavailable

ENGINE_LOGGERS = (
    "record_store",
    "record_client",
    "session_machine",
    "round_resolver",
    "rematch_coordinator",
    "roster_watcher",
    "timer_supervisor",
    "sync_engine",
    "word_sync",
)


class MaxSizeFileHandler(logging.FileHandler):
    def __init__(self, filename: str, max_bytes: int, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, **kwargs)

    def emit(self, record):
        try:
            if os.path.exists(self.baseFilename):
                if os.path.getsize(self.baseFilename) >= self.max_bytes:
                    return
            super().emit(record)
        except Exception:
            self.handleError(record)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AppServiceConfig:
    db_path: str
    record_api_url: str
    standalone: bool
    round_timer_seconds: float
    engine_poll_seconds: float
    engine_mode: str
    word_history_scope: str
    store_timeout_seconds: float
    is_prod: bool
    log_path: str = "word_sync.log"


def config_from_env() -> AppServiceConfig:
    return AppServiceConfig(
        db_path=os.getenv("WORD_SYNC_DB", "word_sync.db"),
        record_api_url=(os.getenv("RECORD_API_URL") or "").strip(),
        standalone=_env_bool("APP_STANDALONE"),
        round_timer_seconds=_env_float("ROUND_TIMER_SECONDS", 30.0),
        engine_poll_seconds=_env_float("ENGINE_POLL_SECONDS", 0.5),
        engine_mode=(os.getenv("ENGINE_MODE") or "auto").strip().lower(),
        word_history_scope=(
            (os.getenv("WORD_HISTORY_SCOPE") or "participant").strip().lower()
        ),
        store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 10.0),
        is_prod=_env_bool("IS_PROD"),
        log_path=os.getenv("WORD_SYNC_LOG", "word_sync.log"),
    )


class AppServices:
    METRIC_NAMES = (
        "sessions_created",
        "words_submitted",
        "duplicate_words_rejected",
        "rounds_advanced",
        "sessions_won",
        "sessions_timed_out",
        "sessions_abandoned",
        "rematches_minted",
        "transition_conflicts",
        "engine_loop_errors",
    )

    def __init__(self, app, config: AppServiceConfig):
        self.app = app
        self.config = config
        self.word_sync_service = None

        self._engine_lock = threading.Lock()
        self._engine_mode_cache: str | None = None
        self.metrics_lock = threading.Lock()
        self.runtime_metrics: dict[str, int] = {name: 0 for name in self.METRIC_NAMES}
        self.runtime_status: dict[str, str] = {"store_last_error": ""}

    # ------------------------
    # Runtime validation + metrics
    # ------------------------

    def validate_runtime_config(self) -> list[str]:
        warnings: list[str] = []
        if self.config.record_api_url and not re.match(
            r"^https?://", self.config.record_api_url, re.IGNORECASE
        ):
            warnings.append("RECORD_API_URL should start with http:// or https://.")

        if self.config.record_api_url and self.config.standalone:
            warnings.append(
                "APP_STANDALONE is enabled; RECORD_API_URL will be ignored."
            )

        if self.config.round_timer_seconds <= 0:
            warnings.append("ROUND_TIMER_SECONDS should be greater than 0.")

        if self.config.engine_poll_seconds <= 0:
            warnings.append("ENGINE_POLL_SECONDS should be greater than 0.")

        if self.config.store_timeout_seconds <= 0:
            warnings.append("STORE_TIMEOUT_SECONDS should be greater than 0.")

        if self.config.word_history_scope not in HISTORY_SCOPES:
            warnings.append(
                "WORD_HISTORY_SCOPE should be one of: participant, session."
            )

        mode = (self.config.engine_mode or "auto").strip().lower()
        if mode not in {"auto", "thread", "off"}:
            warnings.append("ENGINE_MODE should be one of: auto, thread, off.")

        if warnings:
            for warning in warnings:
                self.app.logger.warning("Config warning: %s", warning)
        else:
            self.app.logger.info("Runtime configuration checks passed.")
        return warnings

    def effective_history_scope(self) -> str:
        scope = self.config.word_history_scope
        return scope if scope in HISTORY_SCOPES else HISTORY_SCOPES[0]

    def effective_round_seconds(self) -> float:
        seconds = self.config.round_timer_seconds
        return seconds if seconds > 0 else 30.0

    def effective_poll_seconds(self) -> float:
        seconds = self.config.engine_poll_seconds
        return seconds if seconds > 0 else 0.5

    def record_metric(self, name: str, amount: int = 1) -> None:
        self._increment_metric(name, amount)

    def _increment_metric(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self.metrics_lock:
            self.runtime_metrics[name] = self.runtime_metrics.get(name, 0) + amount

    def set_runtime_status(self, key: str, value: str) -> None:
        text = (value or "").strip()
        if len(text) > 500:
            text = text[:497] + "..."
        with self.metrics_lock:
            self.runtime_status[key] = text

    def record_store_error(self, exc: Exception) -> None:
        if not isinstance(exc, StoreUnavailable):
            return
        self.set_runtime_status("store_last_error", str(exc))

    def resolve_engine_mode(self) -> str:
        if self._engine_mode_cache is not None:
            return self._engine_mode_cache

        raw_mode = (self.config.engine_mode or "auto").strip().lower()
        if raw_mode not in {"auto", "thread", "off"}:
            raw_mode = "auto"
        if raw_mode == "auto":
            # The dev reloader imports the app twice; only the child runs the loop.
            reloader_parent = (
                not self.config.is_prod
                and os.getenv("FLASK_DEBUG", "").strip() in {"1", "true"}
                and os.getenv("WERKZEUG_RUN_MAIN") != "true"
            )
            mode = "off" if reloader_parent else "thread"
        else:
            mode = raw_mode
        self._engine_mode_cache = mode
        return mode

    def get_runtime_metrics(self) -> dict:
        with self.metrics_lock:
            snapshot = dict(self.runtime_metrics)
            snapshot.update(self.runtime_status)
        engine = getattr(self.word_sync_service, "engine", None)
        snapshot["engine_running"] = bool(engine is not None and engine.running)
        snapshot["engine_mode"] = self.resolve_engine_mode()
        snapshot["active_countdowns"] = (
            len(engine.timers.active_countdowns()) if engine is not None else 0
        )
        snapshot["word_history_scope"] = self.effective_history_scope()
        return snapshot

    # ------------------------
    # Sync engine
    # ------------------------

    def start_engine(self, word_sync_service) -> bool:
        self.word_sync_service = word_sync_service
        word_sync_service.engine.add_error_listener(self.record_store_error)
        if self.resolve_engine_mode() == "off":
            self.app.logger.info(
                "Sync engine loop is off; changes are resolved inline by request handlers."
            )
            return False

        with self._engine_lock:
            if word_sync_service.engine.running:
                return True
            word_sync_service.start_engine()
        return True

    def stop_engine(self) -> None:
        with self._engine_lock:
            if self.word_sync_service is not None:
                self.word_sync_service.shutdown()

    # ------------------------
    # Logging + request hooks
    # ------------------------

    def configure_logging(self) -> None:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)

        file_handler = MaxSizeFileHandler(
            self.config.log_path, max_bytes=2 * 1024 * 1024
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)

        self.app.logger.handlers.clear()
        self.app.logger.setLevel(logging.INFO)
        self.app.logger.propagate = False
        self.app.logger.addHandler(console_handler)
        self.app.logger.addHandler(file_handler)
        for name in ENGINE_LOGGERS:
            engine_logger = logging.getLogger(name)
            engine_logger.handlers.clear()
            engine_logger.setLevel(logging.INFO)
            engine_logger.propagate = False
            engine_logger.addHandler(console_handler)
            engine_logger.addHandler(file_handler)
        logging.getLogger("werkzeug").setLevel(logging.ERROR)
        self.app.logger.info("Logging initialised")

    @staticmethod
    def start_timer():
        g.start_time = timelib.time()

    def log_request(self, response):
        duration = round(timelib.time() - g.get("start_time", timelib.time()), 3)
        self.app.logger.info(
            "%s %s (%s) -> %s [%ss]",
            request.method,
            request.path,
            request.endpoint,
            response.status_code,
            duration,
        )
        return response

    def log_exception(self, exception):
        if exception:
            self.app.logger.warning(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.path,
                type(exception).__name__,
            )
