"""
In-process change feed for new messages and the per-session bridge that consumes it.

The hub delivers ``insert`` events to subscriptions scoped to a recipient.
Nothing is replayed: a subscription only sees events published after it
was opened. The bridge owns one subscription for the lifetime of a viewing
session and reconnects when the hub drops it.
"""

import asyncio
import logging
from collections import defaultdict, deque
from typing import Awaitable, Callable
from uuid import UUID

from app.config import settings
from app.core.exceptions import SubscriptionError
from app.schemas.message import MessageEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[MessageEvent], Awaitable[None]]
ReconnectCallback = Callable[[], Awaitable[None]]

# Processed event ids remembered per bridge for de-duplication
SEEN_EVENTS_LIMIT = 1000


class Subscription:
    """Buffered stream of events for one recipient."""

    def __init__(self, hub: "MessageEventHub", recipient_id: UUID, buffer_size: int) -> None:
        self.recipient_id = recipient_id
        self._hub = hub
        self._buffer_size = buffer_size
        self._queue: asyncio.Queue[MessageEvent | None] = asyncio.Queue()
        self._error: SubscriptionError | None = None
        self.closed = False

    def _deliver(self, event: MessageEvent) -> bool:
        if self.closed:
            return False
        if self._queue.qsize() >= self._buffer_size:
            self._close(SubscriptionError("Subscriber fell behind and was disconnected"))
            return False
        self._queue.put_nowait(event)
        return True

    def _close(self, error: SubscriptionError | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        self._error = error
        self._hub._discard(self)
        # Wake the consumer
        self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> MessageEvent:
        event = await self._queue.get()
        if event is None:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return event


class MessageEventHub:
    """Fan-out of message insert events to recipient-scoped subscriptions."""

    def __init__(self, buffer_size: int | None = None) -> None:
        self._buffer_size = buffer_size or settings.REALTIME_BUFFER_SIZE
        self._subscriptions: dict[UUID, set[Subscription]] = defaultdict(set)

    def subscribe(self, recipient_id: UUID) -> Subscription:
        subscription = Subscription(self, recipient_id, self._buffer_size)
        self._subscriptions[recipient_id].add(subscription)
        logger.debug("Opened realtime subscription for %s", recipient_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription._close()
        logger.debug("Closed realtime subscription for %s", subscription.recipient_id)

    def publish(self, event: MessageEvent) -> int:
        """Deliver an event to every subscriber of its recipient. Returns the delivery count."""
        recipient_id = event.message.recipient_id
        delivered = 0
        for subscription in list(self._subscriptions.get(recipient_id, ())):
            if subscription._deliver(event):
                delivered += 1
            else:
                logger.warning(
                    "Dropped realtime subscriber for %s (buffer of %d events exceeded)",
                    recipient_id,
                    self._buffer_size,
                )
        return delivered

    def disconnect_all(self, reason: str = "Realtime channel reset") -> None:
        """Drop every subscriber with a SubscriptionError."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription._close(SubscriptionError(reason))

    def close_all(self) -> None:
        """End every subscription cleanly; consumers see the stream finish and do not reconnect."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription._close()

    def subscriber_count(self, recipient_id: UUID) -> int:
        return len(self._subscriptions.get(recipient_id, ()))

    def _discard(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.recipient_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.recipient_id]


class RealtimeBridge:
    """
    Keeps one subscription open for a viewer and feeds its events to a callback.

    Every event is handed to ``on_event`` at most once, even if the
    channel redelivers it. When the hub drops the subscription the bridge
    resubscribes with linear backoff and calls ``on_reconnect`` so the
    owner can re-read whatever was missed in between.
    """

    def __init__(
        self,
        viewer_id: UUID,
        on_event: EventCallback,
        hub: MessageEventHub | None = None,
        on_reconnect: ReconnectCallback | None = None,
        reconnect_delay: float | None = None,
        max_reconnect_attempts: int | None = None,
    ) -> None:
        self.viewer_id = viewer_id
        self._on_event = on_event
        self._on_reconnect = on_reconnect
        self._hub = hub or message_hub
        self._reconnect_delay = (
            settings.REALTIME_RECONNECT_DELAY_SECONDS
            if reconnect_delay is None
            else reconnect_delay
        )
        self._max_reconnect_attempts = (
            settings.REALTIME_MAX_RECONNECT_ATTEMPTS
            if max_reconnect_attempts is None
            else max_reconnect_attempts
        )
        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._seen: set[UUID] = set()
        self._seen_order: deque[UUID] = deque()
        self._stopped = False

    @property
    def connected(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    async def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Realtime bridge already started")
        self._subscription = self._hub.subscribe(self.viewer_id)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Unsubscribe and stop consuming. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        if self._subscription is not None:
            self._hub.unsubscribe(self._subscription)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while not self._stopped:
            try:
                async for event in self._subscription:
                    await self._dispatch(event)
                return
            except SubscriptionError as e:
                logger.warning("Realtime subscription for %s dropped: %s", self.viewer_id, e.message)
                if not await self._reconnect():
                    return

    async def _dispatch(self, event: MessageEvent) -> None:
        message_id = event.message.id
        if message_id in self._seen:
            logger.debug("Skipping already processed event for message %s", message_id)
            return
        self._remember(message_id)
        try:
            await self._on_event(event)
        except Exception:
            logger.exception("Realtime event handler failed for message %s", message_id)

    def _remember(self, message_id: UUID) -> None:
        self._seen.add(message_id)
        self._seen_order.append(message_id)
        if len(self._seen_order) > SEEN_EVENTS_LIMIT:
            self._seen.discard(self._seen_order.popleft())

    async def _reconnect(self) -> bool:
        for attempt in range(1, self._max_reconnect_attempts + 1):
            await asyncio.sleep(self._reconnect_delay * attempt)
            if self._stopped:
                return False
            try:
                self._subscription = self._hub.subscribe(self.viewer_id)
            except SubscriptionError as e:
                logger.warning(
                    "Reconnect attempt %d/%d for %s failed: %s",
                    attempt,
                    self._max_reconnect_attempts,
                    self.viewer_id,
                    e.message,
                )
                continue

            logger.info("Realtime subscription for %s restored after %d attempt(s)", self.viewer_id, attempt)
            if self._on_reconnect is not None:
                try:
                    await self._on_reconnect()
                except Exception:
                    logger.exception("Post-reconnect refresh failed for %s", self.viewer_id)
            return True

        logger.error(
            "Giving up on realtime for %s after %d attempts, manual refresh only",
            self.viewer_id,
            self._max_reconnect_attempts,
        )
        return False


message_hub = MessageEventHub()
