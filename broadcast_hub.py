"""
Fan-out of vehicle updates to connected observers
"""
import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

from exceptions import StoreUnavailable
from models import ChannelMessage, VehicleUpdate

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], Awaitable[list[VehicleUpdate]]]

_ids = itertools.count(1)


class Subscription:
    """One connected observer's message queue"""

    def __init__(self, max_queue: int):
        self.id = next(_ids)
        self.closed = False
        # One extra slot so the close marker always fits
        self._queue: asyncio.Queue[Optional[ChannelMessage]] = asyncio.Queue(maxsize=max_queue + 1)
        self._max_queue = max_queue
        self._ready = False
        self._pending: list[ChannelMessage] = []

    def _offer(self, message: ChannelMessage) -> bool:
        """Queue a message; False when the observer has fallen too far behind"""
        if self.closed:
            return False
        if not self._ready:
            self._pending.append(message)
            return True
        if self._queue.qsize() >= self._max_queue:
            return False
        self._queue.put_nowait(message)
        return True

    def _open(self, snapshot: Optional[ChannelMessage]) -> bool:
        """Deliver the snapshot, then whatever was published while it was read"""
        self._ready = True
        backlog = ([snapshot] if snapshot is not None else []) + self._pending
        self._pending = []
        return all(self._offer(message) for message in backlog)

    def _close(self, discard_backlog: bool) -> None:
        if self.closed:
            return
        self.closed = True
        self._pending = []
        if discard_backlog:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self) -> Optional[ChannelMessage]:
        """
        Wait for the next message

        Returns:
            The next message, or None once the subscription is closed
        """
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChannelMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class BroadcastHub:
    """Publish-subscribe hub with snapshot-on-connect"""

    def __init__(self, snapshot_source: SnapshotSource, max_queue: int = 1000):
        self._snapshot_source = snapshot_source
        self._max_queue = max_queue
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def observer_count(self) -> int:
        return len(self._subscriptions)

    async def connect(self) -> Subscription:
        """
        Register a new observer

        The first message the observer receives is a snapshot of all
        active vehicles. Updates published while the snapshot is being
        read are held back and delivered right after it.

        Returns:
            The observer's subscription
        """
        subscription = Subscription(self._max_queue)
        self._subscriptions[subscription.id] = subscription

        snapshot = None
        try:
            vehicles = await self._snapshot_source()
            snapshot = ChannelMessage(event="snapshot", data=vehicles)
        except StoreUnavailable as exc:
            logger.warning(f"Snapshot for observer {subscription.id} skipped: {exc}")
        except BaseException:
            self.disconnect(subscription)
            raise

        if not subscription._open(snapshot):
            logger.warning(f"Observer {subscription.id} overflowed while connecting, dropping")
            self.disconnect(subscription, discard_backlog=True)
        else:
            logger.info(f"Observer {subscription.id} connected ({self.observer_count} total)")
        return subscription

    def disconnect(self, subscription: Subscription, discard_backlog: bool = False) -> None:
        """
        Remove an observer

        Messages already queued stay readable unless discard_backlog is set;
        the subscription then yields None.
        """
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.info(f"Observer {subscription.id} disconnected ({self.observer_count} total)")
        subscription._close(discard_backlog)

    def publish(self, update: VehicleUpdate) -> int:
        """
        Deliver an update to every connected observer

        Args:
            update: Vehicle update to broadcast

        Returns:
            Number of observers the update was queued for
        """
        message = ChannelMessage(event="busUpdate", data=update)
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription._offer(message):
                delivered += 1
            else:
                logger.warning(f"Observer {subscription.id} queue full, dropping slow observer")
                self.disconnect(subscription, discard_backlog=True)
        return delivered

    def close(self) -> None:
        """Disconnect every observer"""
        for subscription in list(self._subscriptions.values()):
            self.disconnect(subscription)
