#!/usr/bin/env python3
"""Run a sync engine observer outside the web process.

Useful with ENGINE_MODE=off on the web server, or to replay the change feed
from an earlier sequence after downtime.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a Word Sync engine observer.")
    parser.add_argument(
        "--from-sequence",
        type=int,
        default=0,
        help="Replay change events after this sequence number (default: 0).",
    )
    parser.add_argument(
        "--session",
        default="",
        help="Only observe one session code.",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep polling until interrupted (needed for round countdowns).",
    )
    args = parser.parse_args()

    load_dotenv()

    # Imported after env setup.
    from app_services import config_from_env
    from record_client import get_record_client
    from round_resolver import HISTORY_SCOPES
    from sync_engine import SyncEngine

    config = config_from_env()
    engine = SyncEngine(
        get_record_client(),
        session_code=args.session.strip().upper() or None,
        from_sequence=max(0, args.from_sequence),
        round_seconds=config.round_timer_seconds if config.round_timer_seconds > 0 else 30.0,
        history_scope=(
            config.word_history_scope
            if config.word_history_scope in HISTORY_SCOPES
            else HISTORY_SCOPES[0]
        ),
        poll_interval=config.engine_poll_seconds if config.engine_poll_seconds > 0 else 0.5,
    )

    if args.watch:
        engine.start()
        try:
            while engine.running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            engine.stop()
        return 0

    try:
        seen = engine.pump()
    except Exception as exc:
        payload = {
            "ok": False,
            "error": f"{type(exc).__name__}: {exc}",
            "cursor": engine.cursor,
            "pid": os.getpid(),
        }
        print(json.dumps(payload, indent=2))
        return 2
    finally:
        engine.timers.shutdown()

    payload = {"ok": True, "events": seen, "cursor": engine.cursor}
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
