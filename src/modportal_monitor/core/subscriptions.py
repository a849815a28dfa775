"""Per-destination subscription state."""

import asyncio
import logging
from typing import Callable, Mapping, TypeVar

from modportal_monitor.core.entities import Subscription
from modportal_monitor.core.errors import StateCorruptedError
from modportal_monitor.core.interfaces import StateStore

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_KEY = "subscriptions"

T = TypeVar("T")


class SubscriptionStore:
    """Load-mutate-save access to the destination map.

    Every mutation reloads the map from storage, changes one entry and writes
    the whole map back while holding a single lock, so concurrent commands
    never overwrite each other.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._lock = asyncio.Lock()

    def load(self) -> dict[str, Subscription]:
        """Read the full destination map.

        Raises:
            StateCorruptedError: if the stored map is unreadable or malformed
        """
        raw = self.store.read(SUBSCRIPTIONS_KEY, default={})
        if not isinstance(raw, dict):
            raise StateCorruptedError(f"Subscription map must be an object, got {type(raw).__name__}")
        subscriptions: dict[str, Subscription] = {}
        for destination_id, data in raw.items():
            try:
                subscriptions[str(destination_id)] = Subscription.from_dict(data)
            except ValueError as e:
                raise StateCorruptedError(f"Malformed subscription for {destination_id}: {e}") from e
        return subscriptions

    def save(self, subscriptions: Mapping[str, Subscription]) -> None:
        self.store.write(
            SUBSCRIPTIONS_KEY,
            {destination_id: sub.to_dict() for destination_id, sub in subscriptions.items()},
        )

    async def snapshot(self) -> dict[str, Subscription]:
        """Load the map without holding the lock across the caller's work."""
        async with self._lock:
            return await asyncio.to_thread(self.load)

    async def update(self, destination_id: str, mutate: Callable[[Subscription], T]) -> T:
        """Apply ``mutate`` to one destination and persist the result.

        If ``mutate`` raises, nothing is written.
        """
        async with self._lock:
            subscriptions = await asyncio.to_thread(self.load)
            subscription = subscriptions.setdefault(destination_id, Subscription())
            result = mutate(subscription)
            await asyncio.to_thread(self.save, subscriptions)
            return result

    async def ensure(self, destination_id: str) -> Subscription:
        """Create an empty entry for a destination seen for the first time."""
        async with self._lock:
            subscriptions = await asyncio.to_thread(self.load)
            if destination_id in subscriptions:
                return subscriptions[destination_id]
            subscription = Subscription()
            subscriptions[destination_id] = subscription
            await asyncio.to_thread(self.save, subscriptions)
            logger.info("Created subscription entry for destination %s", destination_id)
            return subscription

    async def merge_tracked_items(self, additions: Mapping[str, set[str]]) -> None:
        """Persist implicit tracking added while dispatching a cycle."""
        additions = {dest: names for dest, names in additions.items() if names}
        if not additions:
            return
        async with self._lock:
            subscriptions = await asyncio.to_thread(self.load)
            for destination_id, names in additions.items():
                subscription = subscriptions.get(destination_id)
                if subscription is None:
                    continue
                subscription.tracked_items.update(names)
            await asyncio.to_thread(self.save, subscriptions)
        logger.info(
            "Tracked %d new items from author subscriptions",
            sum(len(names) for names in additions.values()),
        )
