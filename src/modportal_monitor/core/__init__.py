"""Core domain layer."""

from modportal_monitor.core.catalog import CatalogCache, CatalogSnapshot, build_snapshot
from modportal_monitor.core.changelog import extract_section
from modportal_monitor.core.changes import detect_changes, mark_new_events
from modportal_monitor.core.dispatcher import dispatch
from modportal_monitor.core.entities import (
    Author,
    ChangeEvent,
    ChangeSet,
    CycleReport,
    DispatchPlan,
    Item,
    ItemDetail,
    Notification,
    Release,
    Subscription,
)
from modportal_monitor.core.errors import (
    CommandError,
    DeliveryError,
    LookupFailed,
    ModPortalMonitorError,
    SourceError,
    StateCorruptedError,
    SubscriptionError,
    TimestampError,
    VersionError,
)
from modportal_monitor.core.interfaces import CatalogSource, NotificationService, StateStore
from modportal_monitor.core.state_store import JsonStateStore
from modportal_monitor.core.subscriptions import SubscriptionStore
from modportal_monitor.core.versions import Comparison, compare_versions, is_release_newer
from modportal_monitor.core.watermark import WatermarkStore

__all__ = [
    "Item",
    "ItemDetail",
    "Release",
    "Author",
    "ChangeEvent",
    "ChangeSet",
    "CycleReport",
    "DispatchPlan",
    "Notification",
    "Subscription",
    "CatalogCache",
    "CatalogSnapshot",
    "build_snapshot",
    "extract_section",
    "detect_changes",
    "mark_new_events",
    "dispatch",
    "Comparison",
    "compare_versions",
    "is_release_newer",
    "CatalogSource",
    "NotificationService",
    "StateStore",
    "JsonStateStore",
    "SubscriptionStore",
    "WatermarkStore",
    "ModPortalMonitorError",
    "SourceError",
    "VersionError",
    "TimestampError",
    "StateCorruptedError",
    "SubscriptionError",
    "LookupFailed",
    "DeliveryError",
    "CommandError",
]
