"""Routing of change events to subscribed destinations."""

from typing import Callable, Iterable, Mapping, Optional

from modportal_monitor.core.changelog import extract_section
from modportal_monitor.core.entities import ChangeEvent, DispatchPlan, Notification, Subscription

ChangelogExtractor = Callable[[str, str, Optional[str]], str]


def should_include(event: ChangeEvent, subscription: Subscription, tracked: set[str]) -> bool:
    """Decide whether ``event`` is relevant to a destination.

    ``tracked`` is the destination's tracked items including anything added
    earlier in the same cycle.
    """
    if subscription.track_all:
        return True
    if event.is_new:
        return event.detail.owner in subscription.tracked_authors
    return event.detail.name in tracked


def build_notification(
    destination_id: str,
    subscription: Subscription,
    event: ChangeEvent,
    changelog: str = "",
) -> Notification:
    detail = event.detail
    return Notification(
        destination_id=destination_id,
        channel=subscription.channel,
        item_name=detail.name,
        title=detail.title or detail.name,
        link=detail.url,
        author=detail.owner,
        version=event.release.version,
        released_at=event.release.released_at,
        is_new=event.is_new,
        changelog=changelog,
        thumbnail=detail.thumbnail,
    )


def dispatch(
    events: Iterable[ChangeEvent],
    subscriptions: Mapping[str, Subscription],
    extract_changelog: ChangelogExtractor = extract_section,
) -> DispatchPlan:
    """Plan the notifications for one cycle.

    Events must already be in delivery order. Each destination gets at most
    one notification per (item, version). New items that match only through
    a tracked author are recorded in ``tracked_additions`` so later updates
    reach the destination without ``track_all``.
    """
    events = list(events)
    plan = DispatchPlan()
    changelogs: dict[tuple[str, str], str] = {}

    for destination_id, subscription in subscriptions.items():
        if not subscription.can_notify:
            continue

        tracked = set(subscription.tracked_items)
        additions: set[str] = set()
        seen: set[tuple[str, str]] = set()
        batch: list[Notification] = []

        for event in events:
            if event.key in seen:
                continue
            if not should_include(event, subscription, tracked):
                continue
            seen.add(event.key)

            if event.is_new and not subscription.track_all and event.detail.name not in tracked:
                tracked.add(event.detail.name)
                additions.add(event.detail.name)

            changelog = ""
            if subscription.changelogs:
                if event.key not in changelogs:
                    changelogs[event.key] = extract_changelog(
                        event.detail.changelog, event.release.version, event.detail.source_url
                    )
                changelog = changelogs[event.key]

            batch.append(build_notification(destination_id, subscription, event, changelog))

        if batch:
            plan.notifications[destination_id] = batch
        if additions:
            plan.tracked_additions[destination_id] = additions

    return plan
