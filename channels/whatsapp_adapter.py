"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Inbound: text, interactive (button_reply, list_reply), quick-reply buttons,
  image, video, audio/voice, document, sticker, location, reaction
- Template review callbacks (message_template_status_update)
- Delivery status callbacks (classified, handled elsewhere)
- Outbound: free-form text, approved templates, media by id or link
- Phone number normalization
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.errors import EventParseError
from models.schemas import (
    CanonicalMessage, ChannelCredentials, ChannelType, EventKind,
    MediaDescriptor, MessageType, NormalizedEvent, TemplateStatusUpdate,
)

logger = structlog.get_logger()

# Defaults when the webhook omits mime_type
DEFAULT_MIME_TYPES = {
    MessageType.IMAGE: "image/jpeg",
    MessageType.VIDEO: "video/mp4",
    MessageType.AUDIO: "audio/ogg",
    MessageType.DOCUMENT: "application/octet-stream",
    MessageType.STICKER: "image/webp",
}

_MEDIA_TYPES = {
    "image": MessageType.IMAGE,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "document": MessageType.DOCUMENT,
    "sticker": MessageType.STICKER,
}


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    channel_type = ChannelType.WHATSAPP

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any], event_id: str = "") -> NormalizedEvent:
        """Parse a WhatsApp Cloud API webhook payload."""
        entries = payload.get("entry")
        if not isinstance(entries, list) or not entries:
            raise EventParseError("payload has no entry list")

        change = (entries[0].get("changes") or [{}])[0]
        field = change.get("field", "messages")
        value = change.get("value") or {}

        if field == "message_template_status_update":
            return self._parse_template_status(value, event_id)

        messages = value.get("messages") or []
        if not messages:
            if value.get("statuses"):
                return NormalizedEvent(event_id=event_id, kind=EventKind.DELIVERY_STATUS,
                                       channel=self.channel_type, reason="status update")
            return NormalizedEvent(event_id=event_id, kind=EventKind.IGNORED,
                                   channel=self.channel_type, reason=f"no messages in '{field}'")

        msg = messages[0]
        sender = msg.get("from")
        external_id = msg.get("id")
        if not sender or not external_id:
            raise EventParseError("message without sender or id")

        contact = (value.get("contacts") or [{}])[0]
        message_type, text_body, media = self._parse_content(msg)

        return NormalizedEvent(
            event_id=event_id,
            kind=EventKind.MESSAGE,
            channel=self.channel_type,
            message=CanonicalMessage(
                channel=self.channel_type,
                external_id=external_id,
                sender_identifier=normalize_phone(sender),
                message_type=message_type,
                text_body=self._sanitizer.sanitize(text_body),
                media=media,
                profile_name=(contact.get("profile") or {}).get("name"),
                recipient_account_id=(value.get("metadata") or {}).get("phone_number_id"),
                timestamp=self._parse_timestamp(msg.get("timestamp")),
                raw_payload=payload,
            ),
        )

    def _parse_content(self, msg: dict[str, Any]) -> tuple[MessageType, str, Optional[MediaDescriptor]]:
        wa_type = msg.get("type", "text")

        if wa_type == "text":
            return MessageType.TEXT, (msg.get("text") or {}).get("body", ""), None

        if wa_type in _MEDIA_TYPES:
            message_type = _MEDIA_TYPES[wa_type]
            data = msg.get(wa_type) or {}
            media = MediaDescriptor(
                media_ref=data.get("id", ""),
                caption=data.get("caption") or "",
                mime_type=data.get("mime_type") or DEFAULT_MIME_TYPES[message_type],
                filename=(data.get("filename") or "document") if message_type == MessageType.DOCUMENT else None,
            )
            return message_type, media.caption, media

        if wa_type == "interactive":
            interactive = msg.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            return MessageType.INTERACTIVE, reply.get("title", ""), None

        if wa_type == "button":
            return MessageType.INTERACTIVE, (msg.get("button") or {}).get("text", ""), None

        if wa_type == "location":
            loc = msg.get("location") or {}
            label = loc.get("name") or loc.get("address") or ""
            coords = f"{loc.get('latitude')},{loc.get('longitude')}"
            return MessageType.LOCATION, f"{label} ({coords})" if label else coords, None

        if wa_type == "reaction":
            return MessageType.REACTION, (msg.get("reaction") or {}).get("emoji", ""), None

        return MessageType.UNSUPPORTED, f"[{wa_type} message]", None

    def _parse_template_status(self, value: dict[str, Any], event_id: str) -> NormalizedEvent:
        name = value.get("message_template_name")
        status = value.get("event")
        if not name or not status:
            raise EventParseError("template status without name or event")
        reason = value.get("reason")
        return NormalizedEvent(
            event_id=event_id,
            kind=EventKind.TEMPLATE_STATUS,
            channel=self.channel_type,
            template_status=TemplateStatusUpdate(
                template_name=name,
                language=value.get("message_template_language"),
                status=str(status).upper(),
                reason=None if reason in (None, "NONE") else reason,
            ),
        )

    @staticmethod
    def _parse_timestamp(raw: Any) -> Optional[datetime]:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (TypeError, ValueError):
            return None

    # ── Send ──────────────────────────────────────────────────

    def _messages_url(self, credentials: ChannelCredentials) -> str:
        return f"{self._base_url}/{credentials.phone_number_id}/messages"

    async def _send(self, recipient: str, body: dict[str, Any], credentials: ChannelCredentials) -> str:
        request = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(recipient),
            **body,
        }
        data = await self._post(self._messages_url(credentials), credentials.access_token, request)
        return ((data.get("messages") or [{}])[0]).get("id", "")

    async def send_text(self, recipient: str, text: str, credentials: ChannelCredentials) -> str:
        msg_id = await self._send(recipient, {"type": "text", "text": {"body": text}}, credentials)
        logger.info("whatsapp_text_sent", to=normalize_phone(recipient), msg_id=msg_id)
        return msg_id

    async def send_template(
        self,
        recipient: str,
        template_name: str,
        language: str,
        credentials: ChannelCredentials,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        template: dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if components:
            template["components"] = components
        msg_id = await self._send(recipient, {"type": "template", "template": template}, credentials)
        logger.info("whatsapp_template_sent",
                    to=normalize_phone(recipient), template=template_name, msg_id=msg_id)
        return msg_id

    async def send_media(
        self, recipient: str, media_type: str, media: MediaDescriptor, credentials: ChannelCredentials
    ) -> str:
        ref_key = "link" if media.media_ref.startswith(("http://", "https://")) else "id"
        content: dict[str, Any] = {ref_key: media.media_ref}
        if media.caption and media_type in ("image", "video", "document"):
            content["caption"] = media.caption
        if media.filename and media_type == "document":
            content["filename"] = media.filename
        msg_id = await self._send(recipient, {"type": media_type, media_type: content}, credentials)
        logger.info("whatsapp_media_sent",
                    to=normalize_phone(recipient), media_type=media_type, msg_id=msg_id)
        return msg_id
