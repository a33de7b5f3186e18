"""
Runtime configuration, read from the environment (and a local .env file).
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_timeout(name: str) -> float | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        parsed = float(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


@dataclass
class Settings:
    backend_url: str = "http://127.0.0.1:8188"
    client_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    dev_mode: bool = False
    max_link_hops: int = 64
    # None disables the httpx timeout: a hung backend stalls the drain loop.
    backend_timeout: float | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            backend_url=os.getenv("GRAPHPROMPT_BACKEND_URL", cls.backend_url).rstrip("/"),
            client_id=os.getenv("GRAPHPROMPT_CLIENT_ID") or uuid.uuid4().hex,
            dev_mode=_env_bool("GRAPHPROMPT_DEV_MODE", False),
            max_link_hops=_env_int("GRAPHPROMPT_MAX_LINK_HOPS", 64),
            backend_timeout=_env_timeout("GRAPHPROMPT_BACKEND_TIMEOUT"),
            log_level=os.getenv("GRAPHPROMPT_LOG_LEVEL", "INFO").upper(),
        )
