from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent.parent


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


def read_int_env(name: str, default: int) -> int:
    raw = read_env(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def library_dir() -> Path:
    env = read_env("LECTURE_LIBRARY_DIR")
    base = Path(env) if env else BASE_DIR / "library"
    base.mkdir(parents=True, exist_ok=True)
    return base


def max_upload_bytes() -> int:
    return read_int_env("LECTURE_MAX_UPLOAD_MB", 50) * 1024 * 1024


def token_ttl_hours() -> int:
    return read_int_env("LECTURE_TOKEN_TTL_HOURS", 24 * 7)


def log_level() -> str:
    return (read_env("LECTURE_LOG_LEVEL", "INFO") or "INFO").strip().upper()
