"""Environment-driven settings.

Every value is read at call time so tests and deployments can override it
through the environment without reloading modules.
"""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_EVALUATOR_CAPACITY = 5
DEFAULT_REQUIRED_EVALUATORS = 3


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def db_path() -> Path:
    return Path(os.environ.get("GRANTDESK_DB_PATH") or DATA_DIR / "grantdesk.db")


def evaluator_capacity() -> int:
    """Maximum active (pending/accepted) assignments per evaluator."""
    return _int_env("GRANTDESK_EVALUATOR_CAPACITY", DEFAULT_EVALUATOR_CAPACITY)


def default_required_evaluators() -> int:
    """Quorum assumed by the matrix when a proposal's call cannot be loaded."""
    return _int_env("GRANTDESK_DEFAULT_REQUIRED_EVALUATORS", DEFAULT_REQUIRED_EVALUATORS)


def server_host() -> str:
    return os.environ.get("GRANTDESK_HOST", "127.0.0.1")


def server_port() -> int:
    return _int_env("GRANTDESK_PORT", 8001)


def log_level() -> str:
    return os.environ.get("GRANTDESK_LOG_LEVEL", "info").lower()
