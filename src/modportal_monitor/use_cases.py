"""Business logic use cases."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Union

from modportal_monitor.core import (
    Author,
    CatalogCache,
    CatalogSource,
    CommandError,
    CycleReport,
    DispatchPlan,
    Item,
    ItemDetail,
    LookupFailed,
    ModPortalMonitorError,
    Notification,
    NotificationService,
    Release,
    Subscription,
    SubscriptionError,
    SubscriptionStore,
    WatermarkStore,
    build_snapshot,
    detect_changes,
    dispatch,
    extract_section,
)
from modportal_monitor.core.catalog import DEFAULT_KNOWN_VERSIONS, DEFAULT_VERSION
from modportal_monitor.core.versions import format_timestamp
from modportal_monitor.core.watermark import prune_deferred

logger = logging.getLogger(__name__)

VANILLA_MODS = frozenset({"base", "space-age", "quality", "elevated-rail"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UpdateService:
    """Poll the catalog, detect changes and notify subscribed destinations."""

    def __init__(
        self,
        source: CatalogSource,
        notifier: NotificationService,
        cache: CatalogCache,
        subscriptions: SubscriptionStore,
        watermarks: WatermarkStore,
        known_versions: Iterable[str] = DEFAULT_KNOWN_VERSIONS,
        default_version: str = DEFAULT_VERSION,
        poll_interval: float = 60.0,
        max_deferral: float = 86400.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.source = source
        self.notifier = notifier
        self.cache = cache
        self.subscriptions = subscriptions
        self.watermarks = watermarks
        self.known_versions = tuple(known_versions)
        self.default_version = default_version
        self.poll_interval = poll_interval
        self.max_deferral = timedelta(seconds=max_deferral)
        self.clock = clock

    async def run_cycle(self) -> Optional[CycleReport]:
        """Run one poll cycle.

        Returns None when the catalog could not be fetched; the watermark is
        left untouched in that case.

        Raises:
            StateCorruptedError: if persisted state cannot be read
        """
        now = self.clock()
        cycle_start = format_timestamp(now)
        watermark = await self.watermarks.initialize(now)
        deferred = prune_deferred(
            await asyncio.to_thread(self.watermarks.load_deferred), now, self.max_deferral
        )

        try:
            catalog = await self.source.fetch_catalog()
        except ModPortalMonitorError as e:
            logger.warning("Could not request mods: %s", e)
            return None

        self.cache.publish(build_snapshot(catalog, self.known_versions, self.default_version))

        change_set = await detect_changes(
            catalog, watermark, self.source, self.known_versions, deferred=deferred, until=cycle_start
        )
        logger.info("Updated %d mods", len({event.detail.name for event in change_set.events}))

        subscriptions = await self.subscriptions.snapshot()
        plan = dispatch(change_set.events, subscriptions)
        await self.subscriptions.merge_tracked_items(plan.tracked_additions)

        sent, failures = await self.deliver(plan)

        catalog_names = {item.name for item in catalog}
        next_deferred = {name: since for name, since in deferred.items() if name not in catalog_names}
        next_deferred.update(change_set.failed)
        watermark_after = await self.watermarks.advance(cycle_start, next_deferred)

        return CycleReport(
            watermark_before=watermark,
            watermark_after=watermark_after,
            events=len(change_set.events),
            sent=sent,
            send_failures=failures,
            deferred=len(next_deferred),
        )

    async def deliver(self, plan: DispatchPlan) -> tuple[int, int]:
        """Send every planned notification.

        Destinations are served concurrently; each one receives its batch in
        order, and a failed send never stops the rest.
        """
        results = await asyncio.gather(
            *(self._deliver_batch(batch) for batch in plan.notifications.values())
        )
        sent = sum(ok for ok, _ in results)
        failed = sum(bad for _, bad in results)
        if failed:
            logger.warning("%d notifications could not be delivered", failed)
        return sent, failed

    async def _deliver_batch(self, batch: list[Notification]) -> tuple[int, int]:
        sent = failed = 0
        for notification in batch:
            try:
                await self.notifier.send(notification)
                sent += 1
            except ModPortalMonitorError as e:
                failed += 1
                logger.warning(
                    "Failed to send %s %s to %s: %s",
                    notification.item_name, notification.version, notification.destination_id, e,
                )
        return sent, failed

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Run cycles with a fixed delay between them until ``stop`` is set.

        A cycle that is already running is allowed to finish.
        """
        while not stop.is_set():
            try:
                report = await self.run_cycle()
            except OSError as e:
                logger.error("Cycle aborted, state could not be written: %s", e)
            else:
                if report is not None:
                    logger.debug("Cycle finished: %s", report)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Update loop stopped")


class SubscriptionService:
    """Track and untrack commands for one destination."""

    def __init__(
        self,
        store: SubscriptionStore,
        cache: CatalogCache,
        notifier: Optional[NotificationService] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.notifier = notifier

    def _require_item(self, name: str) -> None:
        if self.cache.snapshot.get_item(name) is None:
            raise SubscriptionError(
                "Invalid Mod Name",
                f"The mod `{name}` does not exist. Please use the autocomplete list for a valid mod.",
            )

    def _require_author(self, name: str) -> Author:
        author = self.cache.snapshot.get_author(name)
        if author is None:
            raise SubscriptionError(
                "Invalid Author Name",
                f"The author `{name}` does not exist. Please use the autocomplete list for a valid author.",
            )
        return author

    async def track_item(self, destination_id: str, name: str) -> str:
        self._require_item(name)

        def mutate(sub: Subscription) -> None:
            sub.tracked_items.add(name)
            sub.track_all = False

        await self.store.update(destination_id, mutate)
        return f"Added `{name}` to tracked mods"

    async def track_author(self, destination_id: str, name: str) -> str:
        author = self._require_author(name)

        def mutate(sub: Subscription) -> None:
            sub.tracked_authors.add(name)
            sub.track_all = False
            sub.tracked_items.update(item.name for item in author.items)

        await self.store.update(destination_id, mutate)
        return f"Added `{name}` to tracked authors"

    async def track_mod_list(self, destination_id: str, payload: Union[str, bytes]) -> str:
        """Track every enabled, non-vanilla mod from a ``mod-list.json``."""
        try:
            data = json.loads(payload)
            names = [
                entry["name"]
                for entry in data["mods"]
                if entry.get("enabled") and entry["name"] not in VANILLA_MODS
            ]
        except (ValueError, KeyError, TypeError, AttributeError):
            raise SubscriptionError("Invalid Attachment", "Failed to parse file") from None

        def mutate(sub: Subscription) -> None:
            sub.tracked_items.update(names)

        await self.store.update(destination_id, mutate)
        return "Added enabled mods to the tracked list"

    async def set_track_all(self, destination_id: str, value: bool) -> str:
        def mutate(sub: Subscription) -> None:
            sub.track_all = value

        await self.store.update(destination_id, mutate)
        return f"{'Enabled' if value else 'Disabled'} tracking of all mods"

    async def set_changelogs(self, destination_id: str, value: bool) -> str:
        def mutate(sub: Subscription) -> None:
            sub.changelogs = value

        await self.store.update(destination_id, mutate)
        return f"{'Enabled' if value else 'Disabled'} changelog updates"

    async def set_enabled(self, destination_id: str, value: bool) -> str:
        def mutate(sub: Subscription) -> None:
            if value and not sub.channel:
                raise SubscriptionError(
                    "Unset Update Channel",
                    "Please set an update channel with `/track set_channel` before enabling mod updates.",
                )
            sub.enabled = value

        await self.store.update(destination_id, mutate)
        return f"{'Enabled' if value else 'Disabled'} mod update messages"

    async def set_channel(self, destination_id: str, channel: str) -> str:
        if not channel:
            raise SubscriptionError("Invalid Channel", "A channel is required.")

        def mutate(sub: Subscription) -> None:
            sub.channel = channel

        await self.store.update(destination_id, mutate)
        return f"Update channel set to <#{channel}>"

    async def untrack_item(self, destination_id: str, name: str) -> str:
        self._require_item(name)

        def mutate(sub: Subscription) -> None:
            sub.tracked_items.discard(name)

        await self.store.update(destination_id, mutate)
        return f"Removed `{name}` from tracked mods"

    async def untrack_author(self, destination_id: str, name: str) -> str:
        author = self._require_author(name)

        def mutate(sub: Subscription) -> None:
            sub.tracked_items.difference_update(item.name for item in author.items)
            sub.tracked_authors.discard(name)

        await self.store.update(destination_id, mutate)
        return f"Removed `{name}` from tracked authors"

    async def untrack_all(self, destination_id: str) -> str:
        def mutate(sub: Subscription) -> None:
            sub.tracked_items.clear()
            sub.tracked_authors.clear()

        await self.store.update(destination_id, mutate)
        return "Removed all mods and authors from the tracked lists"

    async def list_tracked(self, destination_id: str) -> tuple[list[str], list[str]]:
        subscriptions = await self.store.snapshot()
        sub = subscriptions.get(destination_id, Subscription())
        return sorted(sub.tracked_items), sorted(sub.tracked_authors)

    async def send_test(self, destination_id: str) -> str:
        """Send a test message to the destination's update channel.

        Raises:
            SubscriptionError: if no channel is set or the send fails
        """
        subscriptions = await self.store.snapshot()
        sub = subscriptions.get(destination_id, Subscription())
        if not sub.channel or self.notifier is None:
            raise SubscriptionError(
                "Unset Update Channel", "Please set an update channel with `/track set_channel`."
            )
        try:
            await self.notifier.send_test(sub.channel)
        except ModPortalMonitorError as e:
            raise SubscriptionError("Failed to send test mod update", f"```{e}```") from e
        return "Mod update test successful"


class LookupService:
    """Read paths behind the mod, author and changelog commands."""

    def __init__(self, source: CatalogSource, cache: CatalogCache) -> None:
        self.source = source
        self.cache = cache

    async def _detail(self, name: str, full: bool) -> ItemDetail:
        if self.cache.snapshot.get_item(name) is None:
            raise CommandError(
                "Invalid Mod Name",
                f"The mod `{name}` does not exist. Please use the autocomplete list for a valid mod.",
            )
        try:
            return await self.source.fetch_item_detail(name, full=full)
        except ModPortalMonitorError as e:
            logger.warning("Lookup of %s failed: %s", name, e)
            raise LookupFailed(e) from e

    async def mod(self, name: str) -> ItemDetail:
        return await self._detail(name, full=False)

    def author(self, name: str) -> tuple[Author, int]:
        """Return an author and their 1-based rank by total downloads."""
        snapshot = self.cache.snapshot
        author = snapshot.get_author(name)
        if author is None:
            raise CommandError(
                "Invalid Author Name",
                f"The author `{name}` does not exist. Please use the autocomplete list for a valid author.",
            )
        rank = next(i for i, ranked in enumerate(snapshot.ranked_authors, 1) if ranked.name == name)
        return author, rank

    async def changelog(self, name: str, version: Optional[str] = None) -> tuple[ItemDetail, Release, str]:
        """Return the changelog text for one release, with a fallback message."""
        detail = await self._detail(name, full=True)
        if version is None:
            if detail.latest_release is None:
                raise CommandError("Invalid Version", f"{detail.title} has no releases.")
            version = detail.latest_release.version

        release = detail.get_release(version)
        if release is None:
            raise CommandError(
                "Invalid Version",
                f"{detail.title} does not have a release for version `{version}`.\n"
                "Please use the autocomplete list for a valid version.",
            )

        text = extract_section(detail.changelog, version, detail.source_url)
        if not text:
            text = f"No changelog for version {version}"
        return detail, release, text

    async def release_versions(self, name: str, limit: int = 25) -> list[str]:
        """Most recent release versions first."""
        detail = await self._detail(name, full=True)
        return [release.version for release in reversed(detail.releases)][:limit]

    def dependents(self, name: str) -> list[Item]:
        """Items in the current catalog that depend on ``name``."""
        snapshot = self.cache.snapshot
        return [snapshot.items[dep] for dep in snapshot.dependents.get(name, ()) if dep in snapshot.items]
