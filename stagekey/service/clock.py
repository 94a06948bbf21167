from __future__ import annotations

import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...


class SystemClock:
    """Wall clock for timestamps and a monotonic clock for rate windows."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class RandomSource(Protocol):
    def new_id(self) -> str:
        ...

    def token_hex(self, nbytes: int) -> str:
        ...


class SecureRandom:
    """uuid4 ids and ``secrets``-backed token material."""

    def new_id(self) -> str:
        return str(uuid.uuid4())

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)
