"""Tests for use cases."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import AsyncMock

import pytest

from modportal_monitor.core import (
    CatalogCache,
    CommandError,
    DeliveryError,
    Item,
    ItemDetail,
    JsonStateStore,
    LookupFailed,
    Release,
    SourceError,
    Subscription,
    SubscriptionError,
    SubscriptionStore,
    WatermarkStore,
    build_snapshot,
)
from modportal_monitor.use_cases import LookupService, SubscriptionService, UpdateService

WATERMARK = "2024-01-10T00:00:00.000000Z"
NOW = datetime(2024, 1, 20, tzinfo=timezone.utc)
NOW_STAMP = "2024-01-20T00:00:00.000000Z"


def ts(day: int) -> str:
    return f"2024-01-{day:02d}T00:00:00.000000Z"


def make_detail(name: str, owner: str, releases: list[tuple[str, str]], created_at: str) -> ItemDetail:
    history = tuple(Release(version, released_at, "2.0") for version, released_at in releases)
    return ItemDetail(
        name=name,
        title=name.title(),
        owner=owner,
        url=f"https://mods.factorio.com/mod/{name}",
        latest_release=history[-1],
        created_at=created_at,
        releases=history,
        changelog=(
            "-" * 99 + "\nVersion: 0.2\nDate: 2024-01-12\n  Features:\n    - Second release\n"
        ),
    )


def as_item(detail: ItemDetail) -> Item:
    return Item(
        name=detail.name,
        title=detail.title,
        owner=detail.owner,
        downloads_count=10,
        url=detail.url,
        latest_release=detail.latest_release,
    )


FRESH = make_detail("fresh", "acme", [("0.1", ts(11)), ("0.2", ts(12))], ts(11))
OLD = make_detail("old-mod", "zed", [("1.0", ts(1))], ts(1))


def make_source(*details: ItemDetail) -> AsyncMock:
    by_name = {detail.name: detail for detail in details}
    source = AsyncMock()
    source.fetch_catalog.return_value = [as_item(detail) for detail in details]

    async def fetch_item_detail(name: str, full: bool = True) -> ItemDetail:
        return by_name[name]

    source.fetch_item_detail.side_effect = fetch_item_detail
    return source


class Harness:
    """Update service wired to temporary state."""

    def __init__(self, tmpdir: str, source: AsyncMock, clock=lambda: NOW) -> None:
        self.store = JsonStateStore(Path(tmpdir), initial_delay=0)
        self.subscriptions = SubscriptionStore(self.store)
        self.watermarks = WatermarkStore(self.store)
        self.notifier = AsyncMock()
        self.cache = CatalogCache()
        self.service = UpdateService(
            source=source,
            notifier=self.notifier,
            cache=self.cache,
            subscriptions=self.subscriptions,
            watermarks=self.watermarks,
            clock=clock,
        )

    def subscribe(self, destination_id: str, **fields) -> None:
        current = self.subscriptions.load()
        current[destination_id] = Subscription(channel=f"chan-{destination_id}", enabled=True, **fields)
        self.subscriptions.save(current)

    def sent(self) -> list[tuple[str, str, str, bool]]:
        return [
            (n.destination_id, n.item_name, n.version, n.is_new)
            for n in (call.args[0] for call in self.notifier.send.await_args_list)
        ]


@pytest.mark.asyncio
async def test_first_run_initializes_watermark() -> None:
    """Test that the first cycle only initializes the watermark."""
    with TemporaryDirectory() as tmpdir:
        harness = Harness(tmpdir, make_source(FRESH, OLD))

        report = await harness.service.run_cycle()

        assert report.watermark_before == NOW_STAMP
        assert report.watermark_after == NOW_STAMP
        assert report.events == 0
        harness.notifier.send.assert_not_awaited()
        assert len(harness.cache.snapshot) == 2


@pytest.mark.asyncio
async def test_author_tracked_new_item_is_sent_and_tracked() -> None:
    """Test a full cycle for an author-tracked new item."""
    with TemporaryDirectory() as tmpdir:
        source = make_source(FRESH, OLD)
        harness = Harness(tmpdir, source)
        harness.store.write("watermark", WATERMARK)
        harness.subscribe("g1", tracked_authors={"acme"}, changelogs=True)

        report = await harness.service.run_cycle()

        assert harness.sent() == [("g1", "fresh", "0.1", True), ("g1", "fresh", "0.2", False)]
        last = harness.notifier.send.await_args_list[-1].args[0]
        assert last.changelog == "**Features:**\n- Second release"
        assert harness.subscriptions.load()["g1"].tracked_items == {"fresh"}
        assert report.watermark_after == NOW_STAMP
        assert harness.watermarks.load() == NOW_STAMP
        # Only the item with releases past the watermark is fetched
        source.fetch_item_detail.assert_awaited_once_with("fresh", full=True)


@pytest.mark.asyncio
async def test_failed_tracking_persistence_blocks_watermark() -> None:
    """Test that a failed tracking write blocks sends and the watermark."""
    with TemporaryDirectory() as tmpdir:
        harness = Harness(tmpdir, make_source(FRESH))
        harness.store.write("watermark", WATERMARK)
        harness.subscribe("g1", tracked_authors={"acme"})
        harness.subscriptions.merge_tracked_items = AsyncMock(side_effect=OSError("disk full"))

        with pytest.raises(OSError):
            await harness.service.run_cycle()

        harness.notifier.send.assert_not_awaited()
        assert harness.watermarks.load() == WATERMARK


@pytest.mark.asyncio
async def test_send_failure_does_not_block_other_destinations() -> None:
    """Test that one failing destination does not affect others."""
    with TemporaryDirectory() as tmpdir:
        harness = Harness(tmpdir, make_source(FRESH))
        harness.store.write("watermark", WATERMARK)
        harness.subscribe("g1", track_all=True)
        harness.subscribe("g2", track_all=True)

        async def send(notification) -> None:
            if notification.destination_id == "g1":
                raise DeliveryError("Missing Access")

        harness.notifier.send.side_effect = send

        report = await harness.service.run_cycle()

        assert report.sent == 2
        assert report.send_failures == 2
        assert [s for s in harness.sent() if s[0] == "g2"] == [
            ("g2", "fresh", "0.1", True),
            ("g2", "fresh", "0.2", False),
        ]
        assert harness.watermarks.load() == NOW_STAMP


@pytest.mark.asyncio
async def test_catalog_failure_skips_cycle() -> None:
    """Test that a catalog failure skips the cycle."""
    with TemporaryDirectory() as tmpdir:
        source = make_source(FRESH)
        source.fetch_catalog.side_effect = SourceError("HTTP 503")
        harness = Harness(tmpdir, source)
        harness.store.write("watermark", WATERMARK)

        report = await harness.service.run_cycle()

        assert report is None
        assert harness.watermarks.load() == WATERMARK
        assert len(harness.cache.snapshot) == 0


@pytest.mark.asyncio
async def test_failed_detail_is_retried_next_cycle() -> None:
    """Test that a failed detail fetch is retried in the next cycle."""
    with TemporaryDirectory() as tmpdir:
        source = make_source(FRESH)
        working = source.fetch_item_detail.side_effect
        source.fetch_item_detail.side_effect = SourceError("timeout")

        now = [NOW]
        harness = Harness(tmpdir, source, clock=lambda: now[0])
        harness.service.max_deferral = timedelta(days=30)
        harness.store.write("watermark", WATERMARK)
        harness.subscribe("g1", track_all=True)

        first = await harness.service.run_cycle()

        assert first.deferred == 1
        assert harness.watermarks.load_deferred() == {"fresh": WATERMARK}
        assert harness.watermarks.load() == NOW_STAMP
        harness.notifier.send.assert_not_awaited()

        source.fetch_item_detail.side_effect = working
        now[0] = datetime(2024, 1, 20, 0, 1, tzinfo=timezone.utc)

        second = await harness.service.run_cycle()

        assert harness.sent() == [("g1", "fresh", "0.1", True), ("g1", "fresh", "0.2", False)]
        assert second.deferred == 0
        assert harness.watermarks.load_deferred() == {}
        assert second.watermark_after >= first.watermark_after


@pytest.mark.asyncio
async def test_run_forever_stops_when_event_set() -> None:
    """Test that the loop survives a failed cycle and stops on the event."""
    with TemporaryDirectory() as tmpdir:
        harness = Harness(tmpdir, make_source())
        stop = asyncio.Event()
        calls = []

        async def run_cycle():
            calls.append(len(calls))
            if len(calls) == 1:
                raise OSError("disk full")
            stop.set()
            return None

        harness.service.run_cycle = run_cycle
        harness.service.poll_interval = 0

        await asyncio.wait_for(harness.service.run_forever(stop), timeout=5)

        assert calls == [0, 1]


@pytest.fixture
def cache() -> CatalogCache:
    return CatalogCache(build_snapshot([as_item(FRESH), as_item(OLD)]))


@pytest.mark.asyncio
async def test_track_and_untrack_author(cache: CatalogCache) -> None:
    """Test tracking and untracking an author."""
    with TemporaryDirectory() as tmpdir:
        store = SubscriptionStore(JsonStateStore(Path(tmpdir)))
        service = SubscriptionService(store, cache)
        await service.set_track_all("g1", True)

        message = await service.track_author("g1", "acme")

        assert message == "Added `acme` to tracked authors"
        sub = store.load()["g1"]
        assert sub.tracked_authors == {"acme"}
        assert sub.tracked_items == {"fresh"}
        assert sub.track_all is False

        await service.untrack_author("g1", "acme")
        assert await service.list_tracked("g1") == ([], [])


@pytest.mark.asyncio
async def test_track_unknown_item_is_rejected(cache: CatalogCache) -> None:
    """Test that unknown mods cannot be tracked."""
    with TemporaryDirectory() as tmpdir:
        store = SubscriptionStore(JsonStateStore(Path(tmpdir)))
        service = SubscriptionService(store, cache)

        with pytest.raises(SubscriptionError) as excinfo:
            await service.track_item("g1", "nope")

        assert excinfo.value.title == "Invalid Mod Name"
        assert store.load() == {}


@pytest.mark.asyncio
async def test_enable_requires_channel(cache: CatalogCache) -> None:
    """Test that enabling needs a channel."""
    with TemporaryDirectory() as tmpdir:
        store = SubscriptionStore(JsonStateStore(Path(tmpdir)))
        service = SubscriptionService(store, cache)

        with pytest.raises(SubscriptionError, match="Unset Update Channel"):
            await service.set_enabled("g1", True)

        await service.set_channel("g1", "123")
        await service.set_enabled("g1", True)

        assert store.load()["g1"].can_notify


@pytest.mark.asyncio
async def test_track_mod_list(cache: CatalogCache) -> None:
    """Test importing a mod list."""
    with TemporaryDirectory() as tmpdir:
        store = SubscriptionStore(JsonStateStore(Path(tmpdir)))
        service = SubscriptionService(store, cache)
        payload = (
            '{"mods": [{"name": "base", "enabled": true}, {"name": "flib", "enabled": true},'
            ' {"name": "quality", "enabled": true}, {"name": "disabled-mod", "enabled": false}]}'
        )

        await service.track_mod_list("g1", payload)

        assert store.load()["g1"].tracked_items == {"flib"}

        with pytest.raises(SubscriptionError, match="Invalid Attachment"):
            await service.track_mod_list("g1", b"not json")


@pytest.mark.asyncio
async def test_send_test_surfaces_failures(cache: CatalogCache) -> None:
    """Test that test message failures reach the caller."""
    with TemporaryDirectory() as tmpdir:
        store = SubscriptionStore(JsonStateStore(Path(tmpdir)))
        notifier = AsyncMock()
        notifier.send_test.side_effect = DeliveryError("Missing Permissions")
        service = SubscriptionService(store, cache, notifier)
        await service.set_channel("g1", "123")

        with pytest.raises(SubscriptionError, match="Failed to send test mod update"):
            await service.send_test("g1")

        notifier.send_test.assert_awaited_once_with("123")


@pytest.mark.asyncio
async def test_lookup_changelog(cache: CatalogCache) -> None:
    """Test changelog lookups and fallbacks."""
    source = make_source(FRESH)
    lookups = LookupService(source, cache)

    detail, release, text = await lookups.changelog("fresh")
    assert release.version == "0.2"
    assert text == "**Features:**\n- Second release"

    _, _, fallback = await lookups.changelog("fresh", "0.1")
    assert fallback == "No changelog for version 0.1"

    with pytest.raises(CommandError, match="Invalid Version"):
        await lookups.changelog("fresh", "9.9")

    assert await lookups.release_versions("fresh") == ["0.2", "0.1"]


@pytest.mark.asyncio
async def test_lookup_failures(cache: CatalogCache) -> None:
    """Test unknown names and failed portal requests."""
    source = make_source(FRESH)
    source.fetch_item_detail.side_effect = SourceError("HTTP 502")
    lookups = LookupService(source, cache)

    with pytest.raises(CommandError, match="Invalid Mod Name"):
        await lookups.mod("missing")

    with pytest.raises(LookupFailed) as excinfo:
        await lookups.mod("fresh")

    assert excinfo.value.user_message == "Request failed, please try again."


def test_lookup_author_rank(cache: CatalogCache) -> None:
    """Test author lookup with rank."""
    lookups = LookupService(AsyncMock(), cache)

    author, rank = lookups.author("zed")

    assert author.items[0].name == "old-mod"
    assert rank in (1, 2)
    with pytest.raises(CommandError):
        lookups.author("nobody")


@pytest.mark.asyncio
async def test_release_during_cycle_is_sent_once() -> None:
    """Test that a release published after the cycle started is sent only by the next cycle."""
    live = make_detail("live", "acme", [("1.0", ts(1)), ("1.1", "2024-01-20T00:00:30.000000Z")], ts(1))
    with TemporaryDirectory() as tmpdir:
        now = [NOW]
        harness = Harness(tmpdir, make_source(live), clock=lambda: now[0])
        harness.store.write("watermark", "2024-01-19T23:59:00.000000Z")
        harness.subscribe("g1", track_all=True)

        first = await harness.service.run_cycle()
        assert first.events == 0

        now[0] = datetime(2024, 1, 20, 0, 1, tzinfo=timezone.utc)
        await harness.service.run_cycle()
        now[0] = datetime(2024, 1, 20, 0, 2, tzinfo=timezone.utc)
        await harness.service.run_cycle()

        assert harness.sent() == [("g1", "live", "1.1", False)]
