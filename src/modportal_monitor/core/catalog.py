"""In-memory catalog snapshot rebuilt on every poll."""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from modportal_monitor.core.entities import Author, Item
from modportal_monitor.core.versions import normalize_runtime_version

logger = logging.getLogger(__name__)

ALL_VERSIONS = "all"
INTERNAL_CATEGORY = "internal"

DEFAULT_KNOWN_VERSIONS = ("2.0", "1.1", "1.0", "0.18", "0.17", "0.16", "0.15", "0.14", "0.13")
DEFAULT_VERSION = "2.0"


def _bucket_order(item: Item) -> tuple[bool, int]:
    return (item.category == INTERNAL_CATEGORY, -item.downloads_count)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable set of indexes over one catalog fetch."""

    items: Mapping[str, Item] = field(default_factory=lambda: MappingProxyType({}))
    authors: Mapping[str, Author] = field(default_factory=lambda: MappingProxyType({}))
    ranked_authors: tuple[Author, ...] = ()
    versions: Mapping[str, tuple[Item, ...]] = field(default_factory=lambda: MappingProxyType({}))
    dependents: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    default_version: str = DEFAULT_VERSION

    def __len__(self) -> int:
        return len(self.items)

    def get_item(self, name: str) -> Optional[Item]:
        return self.items.get(name)

    def get_author(self, name: str) -> Optional[Author]:
        return self.authors.get(name)

    def bucket(self, version: str) -> tuple[Item, ...]:
        return self.versions.get(version, ())

    def version_filter(self, version: Optional[str] = None) -> tuple[Item, ...]:
        """Items for a version bucket, falling back to the default version."""
        if version is not None and version in self.versions:
            return self.versions[version]
        return self.bucket(self.default_version)

    def author_filter(self, items: Sequence[Item], author: Optional[str] = None) -> list[Item]:
        """Restrict ``items`` to one author; unknown authors leave it unfiltered."""
        if author is None or author not in self.authors:
            return list(items)
        return [item for item in items if item.owner == author]


def build_snapshot(
    items: Iterable[Item],
    known_versions: Iterable[str] = DEFAULT_KNOWN_VERSIONS,
    default_version: str = DEFAULT_VERSION,
) -> CatalogSnapshot:
    """Build a fresh snapshot from a full catalog listing.

    Items whose runtime version does not normalize to a known bucket are kept
    in the ``all`` bucket only.
    """
    known = tuple(known_versions)
    by_name: dict[str, Item] = {}
    by_author: dict[str, list[Item]] = {}
    buckets: dict[str, list[Item]] = {version: [] for version in known}
    buckets[ALL_VERSIONS] = []
    dependents: dict[str, list[str]] = {}
    versionless = 0

    for item in items:
        if item.name in by_name:
            logger.warning("Duplicate item %s in catalog, keeping the first", item.name)
            continue
        by_name[item.name] = item
        by_author.setdefault(item.owner, []).append(item)

        version = normalize_runtime_version(item.runtime_version, known)
        if version:
            buckets[version].append(item)
        else:
            versionless += 1
        buckets[ALL_VERSIONS].append(item)

        for dependency in item.dependencies:
            dependents.setdefault(dependency, []).append(item.name)

    authors = {
        name: Author(
            name=name,
            items=tuple(owned),
            downloads=sum(item.downloads_count for item in owned),
        )
        for name, owned in by_author.items()
    }
    ranked = sorted(authors.values(), key=lambda author: -author.downloads)

    if versionless:
        logger.debug("%d items have no recognized runtime version", versionless)

    return CatalogSnapshot(
        items=MappingProxyType(by_name),
        authors=MappingProxyType(authors),
        ranked_authors=tuple(ranked),
        versions=MappingProxyType(
            {version: tuple(sorted(members, key=_bucket_order)) for version, members in buckets.items()}
        ),
        dependents=MappingProxyType({name: tuple(names) for name, names in dependents.items()}),
        default_version=default_version,
    )


class CatalogCache:
    """Holder for the current snapshot.

    Readers take ``cache.snapshot`` once and use that object for the whole
    request; ``publish`` replaces it with a single reference assignment.
    """

    def __init__(self, snapshot: Optional[CatalogSnapshot] = None) -> None:
        self._snapshot = snapshot or CatalogSnapshot()

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    def publish(self, snapshot: CatalogSnapshot) -> None:
        self._snapshot = snapshot
        logger.info("Catalog snapshot published with %d items", len(snapshot))
