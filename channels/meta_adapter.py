"""
Instagram Direct and Facebook Messenger adapters.

Both channels share the Messenger Platform webhook shape
(entry[].messaging[] with sender/recipient ids) and the Send API
(POST /me/messages); they differ only in identifier namespace and token.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.errors import EventParseError
from models.schemas import (
    CanonicalMessage, ChannelCredentials, ChannelType, EventKind,
    MediaDescriptor, MessageType, NormalizedEvent,
)

logger = structlog.get_logger()

_ATTACHMENT_TYPES = {
    "image": (MessageType.IMAGE, "image/jpeg"),
    "video": (MessageType.VIDEO, "video/mp4"),
    "audio": (MessageType.AUDIO, "audio/mp4"),
    "file": (MessageType.DOCUMENT, "application/octet-stream"),
    "sticker": (MessageType.STICKER, "image/png"),
}

_SEND_ATTACHMENT_TYPES = {"image": "image", "video": "video", "audio": "audio", "document": "file"}


class MetaMessagingAdapter(ChannelAdapter):
    """Shared Messenger-Platform logic; subclasses pick the token."""

    def _token(self, credentials: ChannelCredentials) -> str:
        return credentials.page_access_token

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any], event_id: str = "") -> NormalizedEvent:
        entries = payload.get("entry")
        if not isinstance(entries, list) or not entries:
            raise EventParseError("payload has no entry list")

        entry = entries[0]
        messaging = entry.get("messaging") or []
        if not messaging:
            # feed / changes callbacks are not conversations
            return NormalizedEvent(event_id=event_id, kind=EventKind.IGNORED,
                                   channel=self.channel_type, reason="no messaging events")

        event = messaging[0]
        message = event.get("message")
        if not message:
            if event.get("delivery") or event.get("read"):
                return NormalizedEvent(event_id=event_id, kind=EventKind.DELIVERY_STATUS,
                                       channel=self.channel_type, reason="receipt")
            return NormalizedEvent(event_id=event_id, kind=EventKind.IGNORED,
                                   channel=self.channel_type, reason="non-message callback")

        if message.get("is_echo"):
            return NormalizedEvent(event_id=event_id, kind=EventKind.IGNORED,
                                   channel=self.channel_type, reason="echo of our own send")

        sender = (event.get("sender") or {}).get("id")
        external_id = message.get("mid")
        if not sender or not external_id:
            raise EventParseError("message without sender or mid")

        message_type, text_body, media = self._parse_content(message)
        return NormalizedEvent(
            event_id=event_id,
            kind=EventKind.MESSAGE,
            channel=self.channel_type,
            message=CanonicalMessage(
                channel=self.channel_type,
                external_id=external_id,
                sender_identifier=str(sender),
                message_type=message_type,
                text_body=self._sanitizer.sanitize(text_body),
                media=media,
                recipient_account_id=str((event.get("recipient") or {}).get("id") or entry.get("id") or ""),
                timestamp=self._parse_timestamp(event.get("timestamp")),
                raw_payload=payload,
            ),
        )

    def _parse_content(self, message: dict[str, Any]) -> tuple[MessageType, str, Optional[MediaDescriptor]]:
        text = message.get("text") or ""
        attachments = message.get("attachments") or []
        if not attachments:
            if (message.get("quick_reply") or {}).get("payload") and not text:
                return MessageType.INTERACTIVE, message["quick_reply"]["payload"], None
            return MessageType.TEXT, text, None

        attachment = attachments[0]
        kind = attachment.get("type", "")
        if kind not in _ATTACHMENT_TYPES:
            return MessageType.UNSUPPORTED, text or f"[{kind or 'unknown'} message]", None
        message_type, mime = _ATTACHMENT_TYPES[kind]
        media = MediaDescriptor(
            media_ref=(attachment.get("payload") or {}).get("url", ""),
            caption=text,
            mime_type=mime,
        )
        return message_type, text, media

    @staticmethod
    def _parse_timestamp(raw: Any) -> Optional[datetime]:
        # Messenger timestamps are epoch milliseconds
        try:
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            return None

    # ── Send ──────────────────────────────────────────────────

    async def _send(self, recipient: str, message: dict[str, Any], credentials: ChannelCredentials) -> str:
        body = {
            "recipient": {"id": recipient},
            "messaging_type": "RESPONSE",
            "message": message,
        }
        data = await self._post(f"{self._base_url}/me/messages", self._token(credentials), body)
        return data.get("message_id", "")

    async def send_text(self, recipient: str, text: str, credentials: ChannelCredentials) -> str:
        msg_id = await self._send(recipient, {"text": text}, credentials)
        logger.info("meta_text_sent", channel=self.channel_type.value, to=recipient, msg_id=msg_id)
        return msg_id

    async def send_media(
        self, recipient: str, media_type: str, media: MediaDescriptor, credentials: ChannelCredentials
    ) -> str:
        attachment = {
            "type": _SEND_ATTACHMENT_TYPES.get(media_type, "file"),
            "payload": {"url": media.media_ref, "is_reusable": True},
        }
        msg_id = await self._send(recipient, {"attachment": attachment}, credentials)
        logger.info("meta_media_sent", channel=self.channel_type.value, to=recipient, msg_id=msg_id)
        return msg_id


class MessengerAdapter(MetaMessagingAdapter):
    channel_type = ChannelType.MESSENGER


class InstagramAdapter(MetaMessagingAdapter):
    channel_type = ChannelType.INSTAGRAM

    def _token(self, credentials: ChannelCredentials) -> str:
        return credentials.instagram_access_token or credentials.page_access_token
