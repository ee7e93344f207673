"""
Status Fan-out - delivers order status events to live subscribers

One subscriber per order id; a newer subscription replaces the older one.
Each subscription owns a FIFO queue drained by a single sender task, so a
subscriber receives an order's events in the order they were published.
Publishing to an order nobody watches is a no-op.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Union
from loguru import logger

from .order_schemas import StatusEvent


class StatusTransport(ABC):
    """Connection a subscriber receives events over (e.g. a WebSocket)"""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the connection can accept messages"""
        pass

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class _Close:
    """Queue sentinel ending a sender task"""

    def __init__(self, close_transport: bool):
        self.close_transport = close_transport


Deliverable = Union[StatusEvent, Dict[str, Any], _Close]


class Subscription:
    """
    Handle for one subscriber

    Until started, published events are held back; `start` sends an
    optional backfill first and skips held events it already covered.
    """

    def __init__(self, order_id: str, transport: StatusTransport):
        self.subscription_id = uuid.uuid4().hex
        self.order_id = order_id
        self.transport = transport
        self.active = True
        self.last_sequence = 0
        self.delivered = 0

        self._held: List[Deliverable] = []
        self._queue: "asyncio.Queue[Deliverable]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.active and self.transport.is_open

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self, backfill: Iterable[StatusEvent] = (),
              greeting: Optional[Dict[str, Any]] = None) -> None:
        """Begin delivery: backfill, then greeting, then held and live events"""
        if self._task is not None:
            return
        for event in backfill:
            self._queue.put_nowait(event)
        if greeting is not None:
            self._queue.put_nowait(greeting)
        for item in self._held:
            self._queue.put_nowait(item)
        self._held.clear()
        self._task = asyncio.get_running_loop().create_task(self._sender())

    def deliver(self, item: Union[StatusEvent, Dict[str, Any]]) -> None:
        """Queue an event or raw message for this subscriber"""
        if not self.active:
            return
        if self._task is None:
            self._held.append(item)
        else:
            self._queue.put_nowait(item)

    def close(self, close_transport: bool = False) -> None:
        """Stop after queued messages are flushed; optionally close the connection"""
        if not self.active:
            return
        self.active = False
        if self._task is None:
            self._held.clear()
            if close_transport:
                self._task = asyncio.get_running_loop().create_task(self._close_transport())
        else:
            self._queue.put_nowait(_Close(close_transport))

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _sender(self) -> None:
        while True:
            item = await self._queue.get()
            if isinstance(item, _Close):
                if item.close_transport:
                    await self._close_transport()
                return

            if isinstance(item, StatusEvent):
                if item.sequence is not None:
                    if item.sequence <= self.last_sequence:
                        continue
                    self.last_sequence = item.sequence
                message = item.to_dict()
            else:
                message = item

            if not self.transport.is_open:
                self.active = False
                return
            try:
                await self.transport.send(message)
                self.delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber for order {self.order_id}: send failed ({e})")
                self.active = False
                return

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport for order {self.order_id}: {e}")


class StatusFanout:
    """
    Routes status events to the subscriber registered for each order

    Constructed once per process and shared by the order executor (publish)
    and the transport layer (subscribe/unsubscribe).
    """

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, order_id: str, transport: StatusTransport,
                  start: bool = True) -> Subscription:
        """Register a subscriber, superseding any existing one for the order"""
        previous = self._subscriptions.get(order_id)
        if previous is not None:
            logger.info(f"Superseding subscriber for order {order_id}")
            previous.close(close_transport=True)

        subscription = Subscription(order_id, transport)
        self._subscriptions[order_id] = subscription
        if start:
            subscription.start()

        logger.info(f"Subscriber connected for order {order_id}")
        return subscription

    def publish(self, event: StatusEvent) -> bool:
        """
        Queue an event for the order's subscriber

        Returns:
            True if a live subscriber will receive it
        """
        subscription = self._subscriptions.get(event.order_id)
        if subscription is None:
            return False
        if not subscription.is_open:
            self._discard(subscription)
            return False

        subscription.deliver(event)
        return True

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber; a no-op if it was already superseded or removed"""
        subscription.close()
        if self._subscriptions.get(subscription.order_id) is subscription:
            del self._subscriptions[subscription.order_id]
            logger.info(f"Subscriber disconnected for order {subscription.order_id}")

    def has_subscriber(self, order_id: str) -> bool:
        subscription = self._subscriptions.get(order_id)
        if subscription is None:
            return False
        if not subscription.is_open:
            self._discard(subscription)
            return False
        return True

    def active_subscriber_count(self) -> int:
        """Live subscribers; closed transports are pruned first"""
        for subscription in list(self._subscriptions.values()):
            if not subscription.is_open:
                self._discard(subscription)
        return len(self._subscriptions)

    async def close_all(self) -> None:
        """Flush and close every subscriber's connection"""
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close(close_transport=True)
        for subscription in subscriptions:
            await subscription.wait_closed()

    def _discard(self, subscription: Subscription) -> None:
        subscription.close()
        if self._subscriptions.get(subscription.order_id) is subscription:
            del self._subscriptions[subscription.order_id]
            logger.info(f"Removed disconnected subscriber for order {subscription.order_id}")
