"""Persistence of the poll watermark and deferred retries."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from modportal_monitor.core.errors import StateCorruptedError, TimestampError
from modportal_monitor.core.interfaces import StateStore
from modportal_monitor.core.versions import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

WATERMARK_KEY = "watermark"
DEFERRED_KEY = "deferred"


class WatermarkStore:
    """Read and advance the timestamp of the last processed cycle."""

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._lock = asyncio.Lock()

    def load(self) -> Optional[str]:
        """Return the stored watermark, or None before the first cycle.

        Raises:
            StateCorruptedError: if the stored value is not a timestamp
        """
        value = self.store.read(WATERMARK_KEY)
        if value is None:
            return None
        try:
            parse_timestamp(value)
        except TimestampError as e:
            raise StateCorruptedError(f"Stored watermark is invalid: {e}") from e
        return value

    def load_deferred(self) -> dict[str, str]:
        value = self.store.read(DEFERRED_KEY, default={})
        if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
            raise StateCorruptedError("Deferred map must be an object of timestamps")
        return dict(value)

    async def initialize(self, now: Optional[datetime] = None) -> str:
        """Return the watermark, writing the current time on first start."""
        async with self._lock:
            current = await asyncio.to_thread(self.load)
            if current is None:
                current = format_timestamp(now or datetime.now(timezone.utc))
                await asyncio.to_thread(self.store.write, WATERMARK_KEY, current)
                logger.info("Initialized watermark at %s", current)
            return current

    async def advance(self, candidate: str, deferred: Mapping[str, str]) -> str:
        """Move the watermark forward to ``candidate``.

        The stored value never moves backwards; the deferred map is written
        before the watermark so a crash in between only repeats work.
        """
        parse_timestamp(candidate)
        async with self._lock:
            await asyncio.to_thread(self.store.write, DEFERRED_KEY, dict(deferred))
            current = await asyncio.to_thread(self.load)
            if current is not None and current >= candidate:
                logger.debug("Watermark %s already at or past %s", current, candidate)
                return current
            await asyncio.to_thread(self.store.write, WATERMARK_KEY, candidate)
            return candidate


def prune_deferred(
    deferred: Mapping[str, str],
    now: datetime,
    max_age: timedelta,
) -> dict[str, str]:
    """Drop deferred items whose retry window has run out."""
    kept: dict[str, str] = {}
    for name, since in deferred.items():
        try:
            started = parse_timestamp(since)
        except TimestampError:
            logger.warning("Dropping deferred retry for %s with invalid timestamp", name)
            continue
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if now - started > max_age:
            logger.warning("Giving up on %s, details unavailable since %s", name, since)
            continue
        kept[name] = since
    return kept
