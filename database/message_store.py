"""
Message Store — appends inbound/outbound rows and schedules the real-time
fan-out for after the surrounding transaction commits.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import MessageRow
from database.unit_of_work import UnitOfWork
from job_queue.publisher import RealtimePublisher
from models.schemas import (
    CanonicalMessage, HistoryMessage, MediaDescriptor,
    MessageDirection, MessageStatus, MessageType,
)

logger = structlog.get_logger()


def serialize_body(message_type: MessageType, text_body: str = "",
                   media: Optional[MediaDescriptor] = None) -> str:
    """Plain text stays as-is; media becomes a JSON descriptor."""
    if message_type in (MessageType.TEXT, MessageType.TEMPLATE):
        return text_body or ""
    if media is not None:
        return json.dumps(media.to_body())
    if text_body:
        return text_body
    return f"[{message_type.value} message]"


class MessageStore:

    def __init__(self, publisher: Optional[RealtimePublisher], realtime_channel: str = "chat_events"):
        self.publisher = publisher
        self.realtime_channel = realtime_channel

    async def append(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        conversation_id: str,
        direction: MessageDirection,
        message_type: MessageType,
        body: str,
        external_id: Optional[str] = None,
        status: MessageStatus = MessageStatus.DELIVERED,
        payload: Optional[dict[str, Any]] = None,
        is_automated: bool = False,
    ) -> MessageRow:
        """Insert one row; publish it once the unit of work commits."""
        row = MessageRow(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=direction.value,
            type=message_type.value,
            body=body,
            external_id=external_id or None,
            status=status.value,
            payload=payload,
            is_automated=is_automated,
        )
        uow.session.add(row)
        await uow.session.flush()

        logger.info("message_stored",
                    tenant_id=tenant_id,
                    conversation_id=conversation_id,
                    message_id=row.id,
                    direction=row.direction,
                    type=row.type)

        if self.publisher is not None:
            event = row.to_event()

            async def _publish():
                await self.publisher.publish(self.realtime_channel, event)

            uow.after_commit(_publish, name="realtime_publish")
        return row

    async def append_inbound(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        conversation_id: str,
        message: CanonicalMessage,
    ) -> MessageRow:
        return await self.append(
            uow,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=MessageDirection.INBOUND,
            message_type=message.message_type,
            body=serialize_body(message.message_type, message.text_body, message.media),
            external_id=message.external_id,
            status=MessageStatus.DELIVERED,
            payload=message.raw_payload,
        )


async def recent_text_history(
    session: AsyncSession, conversation_id: str, limit: int = 10
) -> list[HistoryMessage]:
    """Last `limit` text messages, oldest first, as chat roles."""
    result = await session.execute(
        select(MessageRow.direction, MessageRow.body)
        .where(
            MessageRow.conversation_id == conversation_id,
            MessageRow.type == MessageType.TEXT.value,
        )
        .order_by(MessageRow.created_at.desc(), MessageRow.id.desc())
        .limit(limit)
    )
    rows = list(result.all())
    rows.reverse()
    return [
        HistoryMessage(
            role="user" if direction == MessageDirection.INBOUND.value else "assistant",
            content=body,
        )
        for direction, body in rows
        if body
    ]
