"""Exception hierarchy for the monitor."""


class ModPortalMonitorError(Exception):
    """Base error for all monitor failures."""


class SourceError(ModPortalMonitorError):
    """Remote catalog request failed."""


class VersionError(ModPortalMonitorError, ValueError):
    """Version string has a non-numeric segment."""


class TimestampError(ModPortalMonitorError, ValueError):
    """Timestamp is not a valid ISO-8601 value."""


class StateCorruptedError(ModPortalMonitorError):
    """Persisted state could not be read back after all retries."""


class CommandError(ModPortalMonitorError):
    """A user command was rejected.

    The title and description are safe to show to the user who issued it.
    """

    def __init__(self, title: str, description: str) -> None:
        super().__init__(f"{title}: {description}")
        self.title = title
        self.description = description


class SubscriptionError(CommandError):
    """A subscription mutation was rejected."""


class LookupFailed(ModPortalMonitorError):
    """An interactive lookup could not be completed."""

    user_message = "Request failed, please try again."

    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


class DeliveryError(ModPortalMonitorError):
    """A notification could not be delivered."""
