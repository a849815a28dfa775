"""Version and timestamp comparison helpers."""

from datetime import datetime, timezone
from enum import IntEnum
from itertools import zip_longest
from typing import Iterable

from modportal_monitor.core.errors import TimestampError, VersionError

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class Comparison(IntEnum):
    """Outcome of comparing two versions."""

    LESS = -1
    EQUAL = 0
    GREATER = 1


def _segments(version: str) -> list[int]:
    parts = version.split(".")
    try:
        values = [int(part) for part in parts]
    except ValueError:
        raise VersionError(f"Invalid version: {version!r}") from None
    if any(value < 0 for value in values):
        raise VersionError(f"Invalid version: {version!r}")
    return values


def compare_versions(a: str, b: str) -> Comparison:
    """Compare dot-separated versions numerically, segment by segment.

    The shorter version is padded with zeros on the right, so ``1.2`` equals
    ``1.2.0`` and ``1.2`` is less than ``1.10``.
    """
    for left, right in zip_longest(_segments(a), _segments(b), fillvalue=0):
        if left < right:
            return Comparison.LESS
        if left > right:
            return Comparison.GREATER
    return Comparison.EQUAL


def normalize_runtime_version(raw: str, known_versions: Iterable[str]) -> str:
    """Normalize a runtime version to a bucket name.

    Returns an empty string when the version is missing, unparseable, or not
    one of ``known_versions``.
    """
    if not raw:
        return ""
    parts = raw.split(".")
    if not all(part.isascii() and part.isdigit() for part in parts):
        return ""
    normalized = ".".join(str(int(part)) for part in parts)
    if normalized not in set(known_versions):
        return ""
    return normalized


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp.

    Raises:
        TimestampError: if ``value`` is not a valid timestamp
    """
    if not isinstance(value, str) or not value:
        raise TimestampError(f"Invalid timestamp: {value!r}")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise TimestampError(f"Invalid timestamp: {value!r}") from None


def is_release_newer(candidate: str, watermark: str) -> bool:
    """Return True if ``candidate`` is at or after ``watermark``.

    Both timestamps use the portal's fixed-width UTC format, so a plain string
    comparison orders them correctly once both have been validated.
    """
    parse_timestamp(candidate)
    parse_timestamp(watermark)
    return candidate >= watermark


def format_timestamp(moment: datetime) -> str:
    """Format a datetime in the fixed-width form used for the watermark."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)
