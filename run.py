"""Launch the game server, the record store API, or both."""

from __future__ import annotations

import os
import subprocess
import sys
import time
from http.client import HTTPConnection, HTTPSConnection
from urllib.parse import urlsplit

from dotenv import load_dotenv

load_dotenv()


def prompt_mode() -> str:
    while True:
        choice = input("Run which mode? [game/store]: ").strip().lower()
        if choice in {"game", "store", "g", "s"}:
            return "game" if choice in {"game", "g"} else "store"
        print("Please enter 'game' or 'store'.")


def prompt_split() -> str:
    while True:
        choice = (
            input("Run the game server against a separate record store API? [y/n]: ")
            .strip()
            .lower()
        )
        if choice in {"y", "yes"}:
            return "true"
        if choice in {"n", "no"}:
            return "false"
        print("Please enter 'y' or 'n'.")


def wait_for_healthcheck(url: str, timeout_seconds: float = 15.0) -> bool:
    parsed = urlsplit(url)
    if parsed.scheme not in {"http", "https"}:
        return False
    if parsed.hostname not in {"127.0.0.1", "localhost", "::1"}:
        return False

    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    conn_cls = HTTPSConnection if parsed.scheme == "https" else HTTPConnection
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        connection = None
        try:
            connection = conn_cls(parsed.hostname, port, timeout=1.0)
            connection.request("GET", parsed.path or "/")
            response = connection.getresponse()
            response.read()
            if response.status == 200:
                return True
        except OSError:
            time.sleep(0.25)
        finally:
            if connection is not None:
                connection.close()
    return False


def run_game_with_store_api() -> int:
    base_env = os.environ.copy()
    try:
        api_port = int(base_env.get("API_PORT", "8050"))
    except ValueError:
        api_port = 8050
    store_url = f"http://127.0.0.1:{api_port}"

    game_env = base_env.copy()
    game_env["APP_STANDALONE"] = "false"
    game_env["RECORD_API_URL"] = store_url

    print(f"Starting record store API on port {api_port}...")
    store_process = subprocess.Popen(
        [sys.executable, "record_api_server.py"], env=base_env
    )

    try:
        if not wait_for_healthcheck(f"{store_url}/health"):
            if store_process.poll() is None:
                store_process.terminate()
                store_process.wait(timeout=5)
            print("Record store API did not become healthy in time.")
            return 1

        print("Record store API is healthy. Starting game server...")
        return subprocess.call([sys.executable, "app.py"], env=game_env)
    finally:
        if store_process.poll() is None:
            print("Stopping record store API...")
            store_process.terminate()
            try:
                store_process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                store_process.kill()


def main() -> int:
    mode_env = os.getenv("APP_MODE", "").strip().lower()
    split_env = os.getenv("APP_SPLIT_STORE", "").strip().lower()

    mode = mode_env if mode_env in {"game", "store"} else prompt_mode()

    if mode == "store":
        print("Starting record store API (record_api_server.py)...")
        return subprocess.call([sys.executable, "record_api_server.py"])

    if split_env not in {"true", "false"}:
        split_env = prompt_split()

    if split_env == "true":
        return run_game_with_store_api()

    print("Starting game server with a local SQLite store (app.py)...")
    return subprocess.call([sys.executable, "app.py"])


if __name__ == "__main__":
    raise SystemExit(main())
