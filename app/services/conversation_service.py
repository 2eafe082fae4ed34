"""Conversation list derived from the flat message log."""

from dataclasses import dataclass, field
from typing import Iterable, Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.message import Message
from app.schemas.message import ContactBrief, ConversationResponse
from app.services import message_service, profile_service


def _recency_key(message: Message) -> tuple:
    # Equal timestamps are ordered by id so the result never depends on input order
    return (message.created_at, str(message.id))


@dataclass
class _Partition:
    latest: Message
    unread_ids: set[UUID] = field(default_factory=set)


def aggregate_conversations(
    messages: Iterable[Message],
    viewer_id: UUID,
    contacts: Mapping[UUID, ContactBrief] | None = None,
) -> list[ConversationResponse]:
    """
    Fold messages into one conversation per counterparty, most recent first.

    The latest message of a conversation is the one with the greatest
    ``(created_at, id)``. A message counts as unread when the viewer is the
    recipient and it has not been read; each message id counts once no
    matter how often it appears in the input. Messages that do not involve
    the viewer are ignored.
    """
    contacts = contacts or {}
    partitions: dict[UUID, _Partition] = {}

    for message in messages:
        if message.recipient_id == viewer_id:
            counterparty_id = message.sender_id
        elif message.sender_id == viewer_id:
            counterparty_id = message.recipient_id
        else:
            continue

        partition = partitions.get(counterparty_id)
        if partition is None:
            partition = partitions[counterparty_id] = _Partition(latest=message)
        elif _recency_key(message) > _recency_key(partition.latest):
            partition.latest = message

        if message.recipient_id == viewer_id and not message.read:
            partition.unread_ids.add(message.id)

    conversations = []
    for counterparty_id, partition in partitions.items():
        contact = contacts.get(counterparty_id)
        conversations.append(
            ConversationResponse(
                counterparty_id=counterparty_id,
                display_name=(
                    contact.display_name
                    if contact
                    else profile_service.placeholder_name(counterparty_id)
                ),
                counterparty_role=contact.role if contact else None,
                last_message=partition.latest.content,
                last_message_at=partition.latest.created_at,
                last_message_id=partition.latest.id,
                last_message_sender_id=partition.latest.sender_id,
                unread_count=len(partition.unread_ids),
            )
        )

    conversations.sort(
        key=lambda c: (c.last_message_at, str(c.last_message_id), str(c.counterparty_id)),
        reverse=True,
    )
    return conversations


def filter_conversations(
    conversations: list[ConversationResponse],
    search: str | None,
) -> list[ConversationResponse]:
    """Case-insensitive match on the counterparty's display name."""
    if not search or not search.strip():
        return conversations
    needle = search.strip().lower()
    return [c for c in conversations if needle in c.display_name.lower()]


def total_unread(conversations: Iterable[ConversationResponse]) -> int:
    return sum(c.unread_count for c in conversations)


async def get_conversations(
    db: AsyncSession,
    viewer_id: UUID,
    search: str | None = None,
) -> list[ConversationResponse]:
    """Get the viewer's conversation list, recomputed from the store."""
    messages = await message_service.fetch_involving(db, viewer_id)
    counterparty_ids = {
        m.sender_id if m.recipient_id == viewer_id else m.recipient_id
        for m in messages
    }
    contacts = await profile_service.get_contacts(db, counterparty_ids)
    conversations = aggregate_conversations(messages, viewer_id, contacts)
    return filter_conversations(conversations, search)
