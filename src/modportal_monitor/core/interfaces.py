"""Core interfaces for adapters."""

from abc import ABC, abstractmethod
from typing import Any

from modportal_monitor.core.entities import Item, ItemDetail, Notification


class CatalogSource(ABC):
    """Interface for the remote mod catalog."""

    @abstractmethod
    async def fetch_catalog(self) -> list[Item]:
        """Fetch the full catalog listing."""
        pass

    @abstractmethod
    async def fetch_item_detail(self, name: str, full: bool = True) -> ItemDetail:
        """Fetch one item; ``full`` includes release history and changelog."""
        pass


class NotificationService(ABC):
    """Interface for delivering update messages."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Send one notification to its channel."""
        pass

    @abstractmethod
    async def send_test(self, channel: str) -> None:
        """Send a test message to a channel."""
        pass


class StateStore(ABC):
    """Interface for durable JSON key-value state."""

    @abstractmethod
    def read(self, key: str, default: Any = None) -> Any:
        """Read the value stored under ``key``."""
        pass

    @abstractmethod
    def write(self, key: str, value: Any) -> None:
        """Atomically replace the value stored under ``key``."""
        pass
