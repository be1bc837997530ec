"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


class RateLimiter:
    """Simple rate limiter using sleep between events."""

    def __init__(self, rate_per_second: float):
        self.update_rate(rate_per_second)
        self._lock = asyncio.Lock()
        self._next_time = 0.0

    def update_rate(self, rate_per_second: float) -> None:
        self._interval = 0.0 if rate_per_second <= 0 else 1.0 / rate_per_second

    async def wait(self) -> None:
        async with self._lock:
            if self._interval <= 0:
                return
            now = time.perf_counter()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
            self._next_time = time.perf_counter() + self._interval


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_snowflake(value: object) -> str | None:
    """Return a Discord id as a string, or None for anything that is not one.

    Channel mentions such as ``<#123>`` are accepted.
    """

    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if text.startswith("<#") and text.endswith(">"):
        text = text[2:-1]
    if not text.isdigit():
        return None
    return str(int(text))


def parse_rate(value: str | None, default: float) -> float:
    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    try:
        parsed = float(stripped)
    except ValueError:
        return default
    return max(0.0, parsed)
