"""Tests for watermark persistence."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from modportal_monitor.core import JsonStateStore, StateCorruptedError, WatermarkStore
from modportal_monitor.core.watermark import prune_deferred

NOW = datetime(2024, 1, 20, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_initialize_writes_current_time_once() -> None:
    """Test that initialization only writes once."""
    with TemporaryDirectory() as tmpdir:
        watermarks = WatermarkStore(JsonStateStore(Path(tmpdir)))

        first = await watermarks.initialize(NOW)
        second = await watermarks.initialize(NOW + timedelta(days=1))

        assert first == second == "2024-01-20T00:00:00.000000Z"


@pytest.mark.asyncio
async def test_advance_never_moves_backwards() -> None:
    """Test that the watermark never moves backwards."""
    with TemporaryDirectory() as tmpdir:
        watermarks = WatermarkStore(JsonStateStore(Path(tmpdir)))
        await watermarks.initialize(NOW)

        forward = await watermarks.advance("2024-01-21T00:00:00.000000Z", {})
        backward = await watermarks.advance("2024-01-15T00:00:00.000000Z", {})

        assert forward == backward == "2024-01-21T00:00:00.000000Z"
        assert watermarks.load() == "2024-01-21T00:00:00.000000Z"


@pytest.mark.asyncio
async def test_advance_persists_deferred_items() -> None:
    """Test that deferred items are written with the watermark."""
    with TemporaryDirectory() as tmpdir:
        watermarks = WatermarkStore(JsonStateStore(Path(tmpdir)))

        await watermarks.advance("2024-01-21T00:00:00.000000Z", {"flaky": "2024-01-10T00:00:00.000000Z"})

        assert watermarks.load_deferred() == {"flaky": "2024-01-10T00:00:00.000000Z"}


def test_invalid_stored_watermark_is_fatal() -> None:
    """Test that an invalid stored watermark is fatal."""
    with TemporaryDirectory() as tmpdir:
        store = JsonStateStore(Path(tmpdir))
        store.write("watermark", "last tuesday")

        with pytest.raises(StateCorruptedError):
            WatermarkStore(store).load()


def test_prune_deferred_drops_expired_entries() -> None:
    """Test dropping expired and invalid deferred entries."""
    deferred = {
        "recent": "2024-01-19T12:00:00.000000Z",
        "stale": "2024-01-01T00:00:00.000000Z",
        "junk": "??",
    }

    kept = prune_deferred(deferred, NOW, timedelta(days=1))

    assert kept == {"recent": "2024-01-19T12:00:00.000000Z"}
