from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

WORK_DIR_ENV = "QUIRE_WORK_DIR"
LOG_LEVEL_ENV = "QUIRE_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def read_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value not in {None, ""}:
        return value

    file_var = os.getenv(f"{name}_FILE")
    if not file_var:
        return default

    try:
        content = Path(file_var).read_text(encoding="utf-8")
    except OSError:
        return default
    return content.rstrip("\r\n")


def work_dir() -> Optional[Path]:
    """Parent directory for extracted books and merge trees; None means the system temp dir."""
    env = read_env(WORK_DIR_ENV)
    if not env:
        return None
    path = Path(env)
    path.mkdir(parents=True, exist_ok=True)
    return path


def log_level() -> str:
    level = (read_env(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).strip().upper()
    return level or DEFAULT_LOG_LEVEL
