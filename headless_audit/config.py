"""
Service configuration, read from the environment (and a `.env` file if present).
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_HEADLESS_BIN = "./bin/headless_shell"
DEFAULT_LIGHTHOUSE_BIN = "node_modules/.bin/lighthouse"

# Lighthouse can take minutes on heavy pages, but a hung run must not pin a
# worker slot forever.
DEFAULT_AUDIT_TIMEOUT = 300.0
DEFAULT_KILL_GRACE = 5.0
DEFAULT_MAX_QUEUED = 16

CPU_COUNT = os.cpu_count() or 1
# Each audit runs a browser plus a node process, so two cores per pair.
DEFAULT_MAX_CONCURRENT = max(1, CPU_COUNT // 2)


@dataclass(frozen=True)
class Settings:
    headless_bin: str = DEFAULT_HEADLESS_BIN
    headless_extra_flags: Tuple[str, ...] = field(default_factory=tuple)
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN
    audit_timeout: Optional[float] = DEFAULT_AUDIT_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    max_queued: int = DEFAULT_MAX_QUEUED
    bind_host: str = "127.0.0.1"
    log_level: str = "INFO"


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env_file: Optional path to a dotenv file. Values already present in the
                  environment take precedence over the file.

    Returns:
        Settings: The resolved configuration.

    Raises:
        ValueError: If a numeric variable cannot be parsed.
    """
    load_dotenv(env_file)

    # 0 (or negative) disables the timeout entirely
    audit_timeout = _get_float("AUDIT_TIMEOUT", DEFAULT_AUDIT_TIMEOUT)

    return Settings(
        headless_bin=os.getenv("HEADLESS_BIN", DEFAULT_HEADLESS_BIN),
        headless_extra_flags=tuple(os.getenv("HEADLESS_EXTRA_FLAGS", "").split()),
        lighthouse_bin=os.getenv("LIGHTHOUSE_BIN", DEFAULT_LIGHTHOUSE_BIN),
        audit_timeout=audit_timeout if audit_timeout > 0 else None,
        kill_grace=_get_float("KILL_GRACE", DEFAULT_KILL_GRACE),
        max_concurrent=_get_int("MAX_CONCURRENT_AUDITS", DEFAULT_MAX_CONCURRENT),
        max_queued=_get_int("MAX_QUEUED_AUDITS", DEFAULT_MAX_QUEUED),
        bind_host=os.getenv("BIND_HOST", "127.0.0.1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
