"""
Event Normalizer — turns a raw inbound-queue entry into a NormalizedEvent.

Never raises: anything that cannot be parsed comes back as MALFORMED,
anything that is not a conversation message as IGNORED / DELIVERY_STATUS /
TEMPLATE_STATUS, so one bad entry cannot stop the inbound loop.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Union

from pydantic import ValidationError

from channels.base import ChannelRegistry
from models.errors import EventParseError
from models.schemas import ChannelType, EventKind, InboundEnvelope, NormalizedEvent

logger = structlog.get_logger()


class EventNormalizer:

    def __init__(self, registry: ChannelRegistry):
        self.registry = registry

    def normalize(self, raw: Union[str, bytes, dict[str, Any]]) -> NormalizedEvent:
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            if not isinstance(data, dict):
                raise EventParseError("envelope is not an object")
            envelope = InboundEnvelope.model_validate(data)
        except (ValueError, ValidationError, EventParseError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning("event_malformed", error=str(e)[:300])
            return NormalizedEvent(kind=EventKind.MALFORMED, reason=str(e)[:300])

        try:
            channel = ChannelType(envelope.channel.upper())
        except ValueError:
            logger.info("event_channel_ignored", event_id=envelope.id, channel=envelope.channel)
            return NormalizedEvent(event_id=envelope.id, kind=EventKind.IGNORED,
                                   reason=f"unsupported channel {envelope.channel}")

        adapter = self.registry.get(channel)
        if adapter is None:
            logger.warning("event_channel_unregistered", event_id=envelope.id, channel=channel.value)
            return NormalizedEvent(event_id=envelope.id, kind=EventKind.IGNORED, channel=channel,
                                   reason="no adapter registered")

        try:
            event = adapter.parse_inbound(envelope.payload, event_id=envelope.id)
        except Exception as e:
            # parsers walk untrusted nested JSON; any failure is a drop
            logger.warning("event_parse_failed",
                           event_id=envelope.id, channel=channel.value, error=str(e)[:300])
            return NormalizedEvent(event_id=envelope.id, kind=EventKind.MALFORMED,
                                   channel=channel, reason=str(e)[:300])

        logger.debug("event_normalized", event_id=envelope.id, kind=event.kind.value)
        return event
