from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def load_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_env(candidates: Iterable[Path] | None = None) -> None:
    if candidates is None:
        repo_root = Path(__file__).resolve().parents[2]
        candidates = [repo_root / ".env", repo_root / "backend/.env"]
    for candidate in candidates:
        if candidate.exists():
            load_env_file(candidate)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(frozen=True)
class SyncSettings:
    base_url: str = "http://localhost:8000"
    polling_interval: float = 5.0
    badge_polling_interval: float = 10.0
    request_timeout: float = 20.0
    badge_cap: int = 99
    mention_blur_grace: float = 0.15
    max_message_length: int = 4000

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            base_url=(os.getenv("THERAPY_SYNC_BASE_URL") or cls.base_url).rstrip("/"),
            polling_interval=_env_float("THERAPY_SYNC_POLL_SECONDS", cls.polling_interval),
            badge_polling_interval=_env_float("THERAPY_SYNC_BADGE_POLL_SECONDS", cls.badge_polling_interval),
            request_timeout=_env_float("THERAPY_SYNC_TIMEOUT_SECONDS", cls.request_timeout),
            badge_cap=_env_int("THERAPY_SYNC_BADGE_CAP", cls.badge_cap),
            mention_blur_grace=_env_float("THERAPY_SYNC_BLUR_GRACE_SECONDS", cls.mention_blur_grace),
            max_message_length=_env_int("THERAPY_SYNC_MAX_MESSAGE_LENGTH", cls.max_message_length),
        )
