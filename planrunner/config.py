"""Engine, store and server settings.

Values come from PLANRUNNER_* environment variables first, then from the TOML
file named by PLANRUNNER_CONFIG (default: config.toml at the project root).
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# .env at the project root, then in the working directory
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()

# ---------------------------------------------------------------------------
# TOML file
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("PLANRUNNER_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_engine = _cfg.get("engine", {})
_store = _cfg.get("store", {})
_server = _cfg.get("server", {})
_vault = _cfg.get("vault", {})

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

DATA_DIR = Path(os.getenv("PLANRUNNER_DATA_DIR", _store.get("data_dir", str(Path.cwd() / ".planrunner"))))
VAULT_DIR = Path(os.getenv("PLANRUNNER_VAULT_DIR", _vault.get("root", str(Path.cwd()))))

# ---------------------------------------------------------------------------
# Engine defaults
# ---------------------------------------------------------------------------

# 0 means no ceiling on concurrently running ready steps
MAX_CONCURRENT_STEPS = int(os.getenv("PLANRUNNER_MAX_CONCURRENT_STEPS", _engine.get("max_concurrent_steps", 4)))
DEFAULT_BACKOFF_MS = int(os.getenv("PLANRUNNER_DEFAULT_BACKOFF_MS", _engine.get("default_backoff_ms", 250)))
DEFAULT_RETRY_ATTEMPTS = int(os.getenv("PLANRUNNER_DEFAULT_RETRY_ATTEMPTS", _engine.get("default_retry_attempts", 3)))
LARGE_PLAN_STEPS = int(os.getenv("PLANRUNNER_LARGE_PLAN_STEPS", _engine.get("large_plan_steps", 20)))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("PLANRUNNER_HOST", _server.get("host", "127.0.0.1"))
SERVER_PORT = int(os.getenv("PLANRUNNER_PORT", _server.get("port", 8000)))
LOG_LEVEL = os.getenv("PLANRUNNER_LOG_LEVEL", _server.get("log_level", "INFO")).upper()
