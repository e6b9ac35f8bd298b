"""Vault config from environment. Requires .env to be loaded by main.py first."""
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

_TRUE = ("1", "true", "yes", "on")


def _env_flag(key: str, default: bool) -> bool:
    raw = (os.getenv(key, "") or "").strip().lower()
    if not raw:
        return default
    return raw in _TRUE


def _env_positive_float(key: str, default: float) -> float:
    raw = (os.getenv(key, "") or "").strip()
    if not raw:
        return default
    try:
        v = float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", key, raw, default)
        return default
    return default if v <= 0 else v


def _env_positive_int(key: str, default: int) -> int:
    raw = (os.getenv(key, "") or "").strip()
    if not raw:
        return default
    try:
        v = int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %s", key, raw, default)
        return default
    return default if v <= 0 else v


def db_path() -> Path:
    """SQLite file (env VAULT_DB_PATH, default vault.db next to the code)."""
    raw = (os.getenv("VAULT_DB_PATH", "") or "").strip()
    return Path(raw).expanduser() if raw else BASE_DIR / "vault.db"


def db_timeout_seconds() -> float:
    """SQLite busy wait in seconds (env DB_TIMEOUT, default 10)."""
    return _env_positive_float("DB_TIMEOUT", 10.0)


def log_level() -> str:
    level = (os.getenv("LOG_LEVEL", "") or "INFO").strip().upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        logger.warning("LOG_LEVEL=%r unknown; using INFO", level)
        return "INFO"
    return level


BOOKS_PAGE_SIZE = _env_positive_int("BOOKS_PAGE_SIZE", 8)
REALTIME_ENABLED = _env_flag("REALTIME_ENABLED", True)
SEED_DEMO = _env_flag("SEED_DEMO", False)
