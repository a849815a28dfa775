"""Detection of new and updated releases since the last poll."""

import logging
from functools import cmp_to_key
from typing import Iterable, Mapping, Optional

from modportal_monitor.core.entities import ChangeEvent, ChangeSet, Item, ItemDetail, Release
from modportal_monitor.core.errors import ModPortalMonitorError, TimestampError, VersionError
from modportal_monitor.core.interfaces import CatalogSource
from modportal_monitor.core.versions import (
    compare_versions,
    is_release_newer,
    normalize_runtime_version,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


def _before(timestamp: str, until: Optional[str]) -> bool:
    return until is None or not is_release_newer(timestamp, until)


def releases_since(detail: ItemDetail, watermark: str, until: Optional[str] = None) -> list[Release]:
    """Collect releases in ``[watermark, until)``, newest first.

    Release history is sorted oldest first, so the walk stops at the first
    release older than the watermark. Releases at or after ``until`` belong
    to the next cycle.
    """
    collected: list[Release] = []
    for release in reversed(detail.releases):
        if not is_release_newer(release.released_at, watermark):
            break
        if _before(release.released_at, until):
            collected.append(release)
    return collected


def mark_new_events(
    events: Iterable[ChangeEvent],
    watermark: str,
    deferred: Optional[Mapping[str, str]] = None,
    until: Optional[str] = None,
) -> list[ChangeEvent]:
    """Tag the first event of each item created after ``watermark`` as new.

    Deferred items are judged against their own older watermark. Later
    releases of the same brand-new item in this cycle stay updates.
    """
    deferred = deferred or {}
    marked: list[ChangeEvent] = []
    announced: set[str] = set()
    for event in events:
        detail = event.detail
        is_new = (
            detail.name not in announced
            and bool(detail.created_at)
            and is_release_newer(detail.created_at, min(watermark, deferred.get(detail.name, watermark)))
            and _before(detail.created_at, until)
        )
        if is_new:
            announced.add(detail.name)
        marked.append(ChangeEvent(detail=detail, release=event.release, is_new=is_new))
    return marked


def _event_order(a: ChangeEvent, b: ChangeEvent) -> int:
    """Order by release time, then by version for releases sharing a timestamp."""
    if a.release.released_at != b.release.released_at:
        return -1 if a.release.released_at < b.release.released_at else 1
    try:
        return int(compare_versions(a.release.version, b.release.version))
    except VersionError:
        return 0


def _needs_detail(item: Item, watermark: str) -> bool:
    if item.latest_release is None:
        return False
    return is_release_newer(item.latest_release.released_at, watermark)


async def detect_changes(
    catalog: Iterable[Item],
    watermark: str,
    source: CatalogSource,
    known_versions: Iterable[str],
    deferred: Optional[Mapping[str, str]] = None,
    until: Optional[str] = None,
) -> ChangeSet:
    """Find every release published at or after the watermark.

    Args:
        catalog: Freshly fetched catalog listing
        watermark: Timestamp of the last processed cycle
        source: Collaborator used for per-item detail fetches
        known_versions: Recognized runtime-version buckets
        deferred: Items whose detail fetch failed in earlier cycles, mapped to
            the older watermark that still applies to them
        until: Exclusive upper bound, normally the start of this cycle

    Returns:
        Events sorted by release time, plus items whose fetch failed
    """
    known = tuple(known_versions)
    deferred = deferred or {}
    change_set = ChangeSet()
    pending: list[ChangeEvent] = []

    for item in catalog:
        if not normalize_runtime_version(item.runtime_version, known):
            continue

        item_watermark = min(watermark, deferred.get(item.name, watermark))
        try:
            if not _needs_detail(item, item_watermark):
                continue
        except TimestampError as e:
            logger.warning("Skipping %s: %s", item.name, e)
            continue

        try:
            detail = await source.fetch_item_detail(item.name, full=True)
        except ModPortalMonitorError as e:
            logger.warning("Could not fetch details for %s: %s", item.name, e)
            change_set.failed[item.name] = item_watermark
            continue
        change_set.fetched.add(item.name)

        try:
            if detail.created_at:
                parse_timestamp(detail.created_at)
            releases = releases_since(detail, item_watermark, until)
        except TimestampError as e:
            logger.warning("Skipping %s: %s", item.name, e)
            continue

        pending.extend(ChangeEvent(detail=detail, release=release) for release in releases)

    pending.sort(key=cmp_to_key(_event_order))
    change_set.events = mark_new_events(pending, watermark, deferred, until)
    return change_set
