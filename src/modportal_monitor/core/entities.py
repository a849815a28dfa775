"""Core domain entities."""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class Release:
    """A versioned publication of an item."""

    version: str
    released_at: str
    runtime_version: str = ""
    dependencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class Item:
    """A mod as listed by the bulk catalog endpoint."""

    name: str
    title: str
    owner: str
    downloads_count: int = 0
    category: str = ""
    summary: str = ""
    url: str = ""
    latest_release: Optional[Release] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Name cannot be empty")

    @property
    def runtime_version(self) -> str:
        """Raw runtime version declared by the latest release."""
        if self.latest_release is None:
            return ""
        return self.latest_release.runtime_version

    @property
    def dependencies(self) -> tuple[str, ...]:
        if self.latest_release is None:
            return ()
        return self.latest_release.dependencies


@dataclass(frozen=True)
class ItemDetail(Item):
    """A mod with its release history, as returned by the detail endpoint."""

    created_at: str = ""
    releases: tuple[Release, ...] = ()
    changelog: str = ""
    thumbnail: str = ""
    source_url: str = ""
    homepage: str = ""

    def get_release(self, version: str) -> Optional[Release]:
        for release in self.releases:
            if release.version == version:
                return release
        return None


@dataclass(frozen=True)
class Author:
    """Aggregate of all items owned by one author."""

    name: str
    items: tuple[Item, ...] = ()
    downloads: int = 0


@dataclass(frozen=True)
class ChangeEvent:
    """One (item, release) pair at or after the watermark."""

    detail: ItemDetail
    release: Release
    is_new: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.detail.name, self.release.version)


@dataclass(frozen=True)
class Notification:
    """A single update message bound for one destination."""

    destination_id: str
    channel: str
    item_name: str
    title: str
    link: str
    author: str
    version: str
    released_at: str
    is_new: bool
    changelog: str = ""
    thumbnail: str = ""


@dataclass
class Subscription:
    """Per-destination tracking configuration."""

    channel: str = ""
    enabled: bool = False
    track_all: bool = False
    changelogs: bool = False
    tracked_items: set[str] = field(default_factory=set)
    tracked_authors: set[str] = field(default_factory=set)

    @property
    def can_notify(self) -> bool:
        return self.enabled and bool(self.channel)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "enabled": self.enabled,
            "track_all": self.track_all,
            "changelogs": self.changelogs,
            "tracked_items": sorted(self.tracked_items),
            "tracked_authors": sorted(self.tracked_authors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subscription":
        """Build a subscription from its persisted form.

        Raises:
            ValueError: if a field has the wrong shape
        """
        if not isinstance(data, dict):
            raise ValueError(f"Subscription must be a mapping, got {type(data).__name__}")

        tracked_items = data.get("tracked_items", [])
        tracked_authors = data.get("tracked_authors", [])
        for value in (tracked_items, tracked_authors):
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError("Tracked sets must be lists of strings")

        channel = data.get("channel") or ""
        if not isinstance(channel, str):
            raise ValueError("Channel must be a string")

        return cls(
            channel=channel,
            enabled=bool(data.get("enabled", False)),
            track_all=bool(data.get("track_all", False)),
            changelogs=bool(data.get("changelogs", False)),
            tracked_items=set(tracked_items),
            tracked_authors=set(tracked_authors),
        )


@dataclass
class DispatchPlan:
    """Notifications to send plus tracking side effects to persist."""

    notifications: dict[str, list[Notification]] = field(default_factory=dict)
    tracked_additions: dict[str, set[str]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(batch) for batch in self.notifications.values())


@dataclass
class ChangeSet:
    """Result of one change-detection pass."""

    events: list[ChangeEvent] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    fetched: set[str] = field(default_factory=set)


@dataclass
class CycleReport:
    """Summary of one poll cycle."""

    watermark_before: str
    watermark_after: str
    events: int = 0
    sent: int = 0
    send_failures: int = 0
    deferred: int = 0
