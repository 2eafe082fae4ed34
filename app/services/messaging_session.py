"""
Per-viewer messaging state: the conversation list and the open thread.

A session is driven by two sources: commands from the viewer (open a
thread, send, retry, refresh) and message events from its realtime bridge.
It owns no data of its own beyond what the store returns; every trigger
re-reads the store and replaces the derived state.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from app.models.message import Message
from app.schemas.message import ContactBrief, ConversationResponse, MessageEvent
from app.schemas.messaging import (
    DeliveryStatus,
    MessagingSnapshot,
    ThreadMessage,
    ThreadSnapshot,
    ThreadStatus,
)
from app.services import conversation_service, message_service, profile_service, user_service
from app.services.realtime_service import MessageEventHub, RealtimeBridge, message_hub

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], Awaitable[None]]


def _from_store(message: Message) -> ThreadMessage:
    return ThreadMessage(
        local_id=str(message.id),
        id=message.id,
        sender_id=message.sender_id,
        recipient_id=message.recipient_id,
        content=message.content,
        read=message.read,
        created_at=message.created_at,
        status=DeliveryStatus.SENT,
    )


class MessagingSession:
    def __init__(
        self,
        viewer_id: UUID,
        session_factory: async_sessionmaker[AsyncSession],
        hub: MessageEventHub | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self.viewer_id = viewer_id
        self._session_factory = session_factory
        self._hub = hub or message_hub
        self._on_change = on_change
        self._bridge = RealtimeBridge(
            viewer_id,
            self.handle_event,
            hub=self._hub,
            on_reconnect=self._after_reconnect,
        )

        self.conversations: list[ConversationResponse] = []
        self.conversations_loaded = False
        self.conversations_error: str | None = None

        self.thread_status = ThreadStatus.IDLE
        self.counterparty_id: UUID | None = None
        self.counterparty: ContactBrief | None = None
        self.thread_messages: list[ThreadMessage] = []
        self.thread_error: str | None = None
        # Bumped on every open/close; responses carrying an older token are stale
        self._thread_token = 0

    # Lifecycle

    async def start(self) -> None:
        await self.load_conversations()
        await self._bridge.start()

    async def stop(self) -> None:
        await self._bridge.stop()

    @property
    def realtime_connected(self) -> bool:
        return self._bridge.connected

    @property
    def initial_load_failed(self) -> bool:
        return not self.conversations_loaded and self.conversations_error is not None

    # Conversation list

    async def load_conversations(self) -> None:
        """Replace the conversation list; keep the last known list on failure."""
        try:
            async with self._session_factory() as db:
                conversations = await conversation_service.get_conversations(db, self.viewer_id)
        except StoreUnavailableError as e:
            logger.warning("Keeping last known conversations for %s: %s", self.viewer_id, e.message)
            self.conversations_error = e.message
            return

        self.conversations = conversations
        self.conversations_loaded = True
        self.conversations_error = None

    # Thread

    def _is_current(self, token: int, counterparty_id: UUID) -> bool:
        return token == self._thread_token and counterparty_id == self.counterparty_id

    async def open_thread(self, counterparty_id: UUID) -> None:
        """
        Open the conversation with a counterparty.

        The viewer's own id is rejected with ValidationError and an unknown
        user with NotFoundError; in both cases nothing is marked read and
        the thread is left closed.
        """
        if counterparty_id == self.viewer_id:
            raise ValidationError("You cannot message yourself", field="counterparty_id")

        self._thread_token += 1
        token = self._thread_token
        self.counterparty_id = counterparty_id
        self.counterparty = None
        self.thread_messages = []
        self.thread_error = None
        self.thread_status = ThreadStatus.LOADING

        async with self._session_factory() as db:
            try:
                user = await user_service.get_user_by_id(db, counterparty_id)
            except SQLAlchemyError as e:
                logger.warning("Counterparty lookup for %s failed: %s", counterparty_id, e)
                self._abandon_open(token, counterparty_id)
                raise StoreUnavailableError(operation="open_thread") from e
            if user is None:
                self._abandon_open(token, counterparty_id)
                raise NotFoundError("User not found", resource="user")

            # Once per open; the thread loads whether or not this succeeds
            await message_service.mark_read(db, self.viewer_id, counterparty_id)

        if self._is_current(token, counterparty_id):
            self.counterparty = profile_service.to_contact(user)

        await self._load_thread(token, counterparty_id)
        if self._is_current(token, counterparty_id):
            await self.load_conversations()

    def _abandon_open(self, token: int, counterparty_id: UUID) -> None:
        if self._is_current(token, counterparty_id):
            self.close_thread()

    def close_thread(self) -> None:
        self._thread_token += 1
        self.counterparty_id = None
        self.counterparty = None
        self.thread_messages = []
        self.thread_error = None
        self.thread_status = ThreadStatus.IDLE

    async def _load_thread(self, token: int, counterparty_id: UUID) -> None:
        try:
            async with self._session_factory() as db:
                messages = await message_service.fetch_between(db, self.viewer_id, counterparty_id)
        except StoreUnavailableError as e:
            if self._is_current(token, counterparty_id):
                self.thread_error = e.message
                self.thread_status = ThreadStatus.READY
            return

        if not self._is_current(token, counterparty_id):
            logger.debug("Discarding stale thread response for %s", counterparty_id)
            return

        self._merge_thread(messages)
        self.thread_error = None
        self.thread_status = ThreadStatus.READY

    def _merge_thread(self, newest_first: list[Message]) -> None:
        """Replace persisted messages with the store's copy, keeping unsent local entries."""
        persisted: list[ThreadMessage] = []
        seen: set[UUID] = set()
        for message in reversed(newest_first):
            if message.id in seen:
                continue
            seen.add(message.id)
            persisted.append(_from_store(message))

        unsent = [m for m in self.thread_messages if m.id is None]
        self.thread_messages = persisted + unsent

    # Sending

    async def send(self, content: str) -> ThreadMessage:
        """
        Send a message to the open thread.

        Raises ValidationError before anything is sent when the content is
        blank or too long, or no thread is open. A store failure does not
        raise: the message stays in the thread flagged as failed and can be
        retried.
        """
        content = message_service.clean_content(content)
        if self.counterparty_id is None or self.thread_status != ThreadStatus.READY:
            raise ValidationError("Open a conversation before sending a message")

        pending = ThreadMessage(
            local_id=uuid4().hex,
            sender_id=self.viewer_id,
            recipient_id=self.counterparty_id,
            content=content,
            created_at=datetime.now(timezone.utc),
            status=DeliveryStatus.PENDING,
        )
        self.thread_messages.append(pending)
        return await self._deliver(pending, self._thread_token)

    async def retry(self, local_id: str) -> ThreadMessage:
        entry = next((m for m in self.thread_messages if m.local_id == local_id), None)
        if entry is None or entry.status != DeliveryStatus.FAILED:
            raise ValidationError("Only failed messages can be retried", field="local_id")
        entry.status = DeliveryStatus.PENDING
        return await self._deliver(entry, self._thread_token)

    async def _deliver(self, entry: ThreadMessage, token: int) -> ThreadMessage:
        try:
            async with self._session_factory() as db:
                message = await message_service.send_message(
                    db, self.viewer_id, entry.recipient_id, entry.content, hub=self._hub
                )
        except StoreUnavailableError as e:
            logger.warning("Send to %s failed, flagged for retry: %s", entry.recipient_id, e.message)
            entry.status = DeliveryStatus.FAILED
            return entry

        if self._is_current(token, entry.recipient_id):
            self._reconcile(entry, message)
        await self.load_conversations()
        return entry

    def _reconcile(self, entry: ThreadMessage, message: Message) -> None:
        entry.id = message.id
        entry.created_at = message.created_at
        entry.read = message.read
        entry.status = DeliveryStatus.SENT
        if any(m.id == message.id for m in self.thread_messages if m is not entry):
            # A re-fetch already brought the persisted copy in
            self.thread_messages = [m for m in self.thread_messages if m is not entry]

    # Realtime and manual refresh

    async def handle_event(self, event: MessageEvent) -> None:
        """React to a message addressed to the viewer."""
        try:
            await self.load_conversations()
        except Exception:
            logger.exception("Conversation refresh after realtime event failed")

        counterparty_id = self.counterparty_id
        if counterparty_id is not None and event.message.sender_id == counterparty_id:
            try:
                await self._load_thread(self._thread_token, counterparty_id)
            except Exception:
                logger.exception("Thread refresh after realtime event failed")

        await self._notify()

    async def refresh(self) -> None:
        """Re-read everything; the fallback while realtime is unavailable."""
        await self.load_conversations()
        if self.counterparty_id is not None:
            await self._load_thread(self._thread_token, self.counterparty_id)

    async def _after_reconnect(self) -> None:
        await self.refresh()
        await self._notify()

    async def _notify(self) -> None:
        if self._on_change is not None:
            await self._on_change()

    def snapshot(self) -> MessagingSnapshot:
        return MessagingSnapshot(
            viewer_id=self.viewer_id,
            conversations=self.conversations,
            unread_total=conversation_service.total_unread(self.conversations),
            conversations_error=self.conversations_error,
            initial_load_failed=self.initial_load_failed,
            realtime_connected=self.realtime_connected,
            thread=ThreadSnapshot(
                status=self.thread_status,
                counterparty=self.counterparty,
                messages=list(self.thread_messages),
                error=self.thread_error,
            ),
        )
