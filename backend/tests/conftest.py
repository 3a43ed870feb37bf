from __future__ import annotations

import os
import sys
from pathlib import Path

# Add backend folder to sys.path so `import keyguard...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Settings are read at import time; keep tests independent of a developer .env
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEV_AUTH_BYPASS", "false")
os.environ.setdefault("SENTRY_DSN", "")
