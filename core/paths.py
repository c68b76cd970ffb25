from __future__ import annotations

import os
from pathlib import Path


APP_ROOT = (
    Path(os.getenv("POCKETCHAT_HOME"))
    if os.getenv("POCKETCHAT_HOME")
    else Path.home() / ".pocketchat"
).resolve()

CONFIG_DIR = APP_ROOT / "config"
SESSIONS_DIR = APP_ROOT / "ChatHistory"
MODELS_DIR = Path(os.getenv("POCKETCHAT_MODELS_DIR", APP_ROOT / "models")).resolve()
