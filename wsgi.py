"""
WSGI entrypoint for Word Sync.

Point your host's WSGI configuration at this module, or import
``application`` from it. Set WORD_SYNC_PROJECT_ROOT when the file is copied
outside the project.
"""

from __future__ import annotations

import os
import sys

from dotenv import load_dotenv

PROJECT_ROOT = os.getenv("WORD_SYNC_PROJECT_ROOT", "")
if not PROJECT_ROOT or not os.path.isdir(PROJECT_ROOT):
    PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

load_dotenv(os.path.join(PROJECT_ROOT, ".env"))

# - "game"  => app.py (game API)
# - "store" => record_api_server.py (standalone record store API)
WSGI_TARGET = os.getenv("WSGI_TARGET", "game").strip().lower()

if WSGI_TARGET == "store":
    from record_api_server import app as application  # noqa: E402
else:
    from app import app as application  # noqa: E402
