"""
registry.py – Channel → subscription bookkeeping for the stream hub.

Many logical subscriptions share one websocket.  The registry guarantees at
most one live registration per channel name, so a second subscribe to the
same channel returns the existing handle instead of creating a duplicate.

Handles are small integers from a counter that only ever increases; they
double as the JSON-RPC ``id`` of the subscribe frame so server
acknowledgements can be matched back to a subscription.

Subscription lifecycle
----------------------
    REQUESTED ──ack / first data──▶ ACTIVE
        │                             │
        └────────unsubscribe──────────┴──▶ UNSUBSCRIBING ──▶ CLOSED
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, unique
from typing import Optional

logger = logging.getLogger(__name__)


@unique
class SubscriptionState(str, Enum):
    REQUESTED     = "requested"
    ACTIVE        = "active"
    UNSUBSCRIBING = "unsubscribing"
    CLOSED        = "closed"

    @property
    def is_live(self) -> bool:
        return self in (SubscriptionState.REQUESTED, SubscriptionState.ACTIVE)


@dataclass
class Subscription:
    channel: str
    handle:  int
    state:   SubscriptionState = SubscriptionState.REQUESTED


class SubscriptionRegistry:
    """
    Channel-keyed subscription table.

    ``lock`` guards every mutation.  StreamHub holds it while it both updates
    the table and sends the corresponding frame, so a reconnect cannot
    resubscribe a channel that is half-way through being added or removed.
    The ``*_locked`` methods expect the caller to hold it already.
    """

    def __init__(self) -> None:
        self.lock         = asyncio.Lock()
        self._by_channel: dict[str, Subscription] = {}
        self._by_handle:  dict[int, Subscription] = {}
        self._next_handle = 1

    def __len__(self) -> int:
        return len(self._by_channel)

    def __contains__(self, channel: object) -> bool:
        return channel in self._by_channel

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def by_channel(self, channel: str) -> Optional[Subscription]:
        return self._by_channel.get(channel)

    def by_handle(self, handle: int) -> Optional[Subscription]:
        return self._by_handle.get(handle)

    def live(self) -> list[Subscription]:
        """Snapshot of every Requested or Active subscription, in handle order."""
        subs = [s for s in self._by_channel.values() if s.state.is_live]
        return sorted(subs, key=lambda s: s.handle)

    # ------------------------------------------------------------------
    # Mutations (caller holds ``lock``)
    # ------------------------------------------------------------------

    def register_locked(self, channel: str) -> tuple[Subscription, bool]:
        """
        Return the live subscription for ``channel``, creating it if needed.

        The boolean is True when a new subscription was created (and so a
        subscribe frame is owed to the server).
        """
        existing = self._by_channel.get(channel)
        if existing is not None and existing.state.is_live:
            return existing, False

        sub = Subscription(channel=channel, handle=self._next_handle)
        self._next_handle += 1
        self._by_channel[channel] = sub
        self._by_handle[sub.handle] = sub
        logger.debug("Registered %s as handle %d", channel, sub.handle)
        return sub, True

    def begin_unsubscribe_locked(self, handle: int) -> Optional[Subscription]:
        """Move a live subscription to UNSUBSCRIBING; None if unknown or closed."""
        sub = self._by_handle.get(handle)
        if sub is None or not sub.state.is_live:
            return None
        sub.state = SubscriptionState.UNSUBSCRIBING
        return sub

    def remove_locked(self, handle: int) -> Optional[Subscription]:
        sub = self._by_handle.pop(handle, None)
        if sub is None:
            return None
        if self._by_channel.get(sub.channel) is sub:
            del self._by_channel[sub.channel]
        sub.state = SubscriptionState.CLOSED
        return sub

    def clear_locked(self) -> None:
        for sub in self._by_handle.values():
            sub.state = SubscriptionState.CLOSED
        self._by_channel.clear()
        self._by_handle.clear()

    # ------------------------------------------------------------------
    # Activation (no lock needed; single assignment from the read loop)
    # ------------------------------------------------------------------

    def mark_active(self, handle: int) -> bool:
        sub = self._by_handle.get(handle)
        if sub is None or sub.state is not SubscriptionState.REQUESTED:
            return False
        sub.state = SubscriptionState.ACTIVE
        logger.debug("Subscription %s (handle %d) is active", sub.channel, handle)
        return True

    def mark_channel_active(self, channel: str) -> bool:
        sub = self._by_channel.get(channel)
        if sub is None:
            return False
        return self.mark_active(sub.handle)

    # ------------------------------------------------------------------
    # Locking convenience wrappers
    # ------------------------------------------------------------------

    async def register(self, channel: str) -> tuple[Subscription, bool]:
        async with self.lock:
            return self.register_locked(channel)

    async def remove(self, handle: int) -> Optional[Subscription]:
        async with self.lock:
            return self.remove_locked(handle)

    async def clear(self) -> None:
        async with self.lock:
            self.clear_locked()
