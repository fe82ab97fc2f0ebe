"""
Channel Sender — one entry point for outbound messages on every channel.

send() is the conversational path: it never raises and returns None when
nothing went out. send_template() / send_media() are the campaign path and
raise ProviderError so a RetryPolicy can classify the failure.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelAdapter, ChannelError, ChannelRegistry, ProviderError
from channels.meta_adapter import InstagramAdapter, MessengerAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from models.schemas import ChannelCredentials, ChannelType, MediaDescriptor

logger = structlog.get_logger()


class ChannelSender:

    def __init__(
        self,
        registry: ChannelRegistry,
        default_credentials: Optional[ChannelCredentials] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.registry = registry
        self.default_credentials = default_credentials or ChannelCredentials()
        self._client = client

    def _adapter(self, channel: ChannelType) -> ChannelAdapter:
        adapter = self.registry.get(channel)
        if adapter is None:
            raise ProviderError(f"no adapter for {channel.value}", channel=channel.value)
        return adapter

    def _credentials(self, credentials: Optional[ChannelCredentials]) -> ChannelCredentials:
        if credentials is None:
            return self.default_credentials
        return credentials.merged_over(self.default_credentials)

    async def send(
        self,
        channel: ChannelType,
        recipient: str,
        text: str,
        credentials: Optional[ChannelCredentials] = None,
    ) -> Optional[str]:
        """Send free-form text; returns the provider message id or None."""
        try:
            msg_id = await self.send_text(channel, recipient, text, credentials)
        except ChannelError as e:
            logger.error("channel_send_failed",
                         channel=channel.value, to=recipient, error=str(e),
                         retryable=e.retryable)
            return None
        except Exception as e:
            logger.error("channel_send_unexpected_error",
                         channel=channel.value, to=recipient,
                         error_type=e.__class__.__name__, error=str(e)[:300])
            return None
        return msg_id or None

    async def send_text(
        self,
        channel: ChannelType,
        recipient: str,
        text: str,
        credentials: Optional[ChannelCredentials] = None,
    ) -> str:
        return await self._adapter(channel).send_text(recipient, text, self._credentials(credentials))

    async def send_template(
        self,
        channel: ChannelType,
        recipient: str,
        template_name: str,
        language: str,
        credentials: Optional[ChannelCredentials] = None,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        return await self._adapter(channel).send_template(
            recipient, template_name, language, self._credentials(credentials), components,
        )

    async def send_media(
        self,
        channel: ChannelType,
        recipient: str,
        media_type: str,
        media: MediaDescriptor,
        credentials: Optional[ChannelCredentials] = None,
    ) -> str:
        return await self._adapter(channel).send_media(
            recipient, media_type, media, self._credentials(credentials),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def create_channel_sender(
    graph_url: str = "https://graph.facebook.com",
    api_version: str = "v18.0",
    timeout: float = 30.0,
    default_credentials: Optional[ChannelCredentials] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ChannelSender:
    """Wire one shared HTTP client into an adapter per channel."""
    client = client or httpx.AsyncClient(timeout=timeout)
    registry = ChannelRegistry()
    for adapter_cls in (WhatsAppAdapter, InstagramAdapter, MessengerAdapter):
        registry.register(adapter_cls(client=client, graph_url=graph_url, api_version=api_version))
    return ChannelSender(registry, default_credentials=default_credentials, client=client)
