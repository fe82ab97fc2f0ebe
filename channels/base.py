"""
Channel Adapters — shared base infrastructure for the Meta channels.

Provides:
- ChannelError / ProviderError: structured send errors with retryability
- InputSanitizer: inbound text cleanup
- ChannelAdapter: abstract base (inbound parsing + outbound Graph API calls)
- ChannelRegistry: adapter lookup by ChannelType
"""
from __future__ import annotations

import abc
import re
import structlog
from typing import Any, Optional

import httpx

from models.schemas import ChannelCredentials, ChannelType, MediaDescriptor, NormalizedEvent

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

# Graph API throttling / transient codes
RETRYABLE_PROVIDER_CODES = frozenset({
    4,          # application request limit reached
    80007,      # WhatsApp business account rate limit
    130429,     # cloud API throughput reached
    131048,     # spam rate limit hit
    131056,     # pair rate limit (same recipient too often)
})


class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ProviderError(ChannelError):
    """A provider call failed; status_code/code decide retryability."""

    def __init__(
        self,
        message: str,
        channel: str = "",
        retryable: bool = False,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
    ):
        self.status_code = status_code
        self.code = code
        super().__init__(message, channel, retryable)

    @classmethod
    def from_response(cls, response: httpx.Response, channel: str = "") -> "ProviderError":
        code = None
        message = response.text[:500]
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            code = error.get("code") if isinstance(error.get("code"), int) else None
            message = error.get("message") or message
        elif isinstance(error, str) and error:
            # gateways and proxies answer {"error": "Service Unavailable"}
            message = error
        retryable = (
            response.status_code == 429
            or response.status_code >= 500
            or code in RETRYABLE_PROVIDER_CODES
        )
        return cls(
            f"HTTP {response.status_code}: {message}",
            channel=channel,
            retryable=retryable,
            status_code=response.status_code,
            code=code,
        )

    @classmethod
    def network(cls, exc: Exception, channel: str = "") -> "ProviderError":
        kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "network error"
        return cls(f"{kind}: {exc.__class__.__name__} {exc}".strip(), channel=channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    """Drops control characters (newlines and tabs survive) and caps length."""

    _CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: Optional[str]) -> str:
        if not content:
            return ""
        cleaned = self._CONTROL_CHARS.sub("", content)
        if len(cleaned) > self.max_length:
            cleaned = f"{cleaned[: self.max_length]}... [truncated]"
        return cleaned.strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement parse_inbound (pure, no I/O) and the send_* calls.
    Every send raises ProviderError on failure; ChannelSender decides whether
    that becomes a None result or propagates to a retry policy.
    """

    channel_type: ChannelType

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        graph_url: str = "https://graph.facebook.com",
        api_version: str = "v18.0",
    ):
        self._client = client
        self._base_url = f"{graph_url.rstrip('/')}/{api_version}"
        self._sanitizer = InputSanitizer()

    # ── Inbound ───────────────────────────────────────────────

    @abc.abstractmethod
    def parse_inbound(self, payload: dict[str, Any], event_id: str = "") -> NormalizedEvent:
        """Classify a webhook payload. May raise; the normalizer catches."""
        ...

    # ── Outbound ──────────────────────────────────────────────

    @abc.abstractmethod
    async def send_text(self, recipient: str, text: str, credentials: ChannelCredentials) -> str:
        ...

    @abc.abstractmethod
    async def send_media(
        self, recipient: str, media_type: str, media: MediaDescriptor, credentials: ChannelCredentials
    ) -> str:
        ...

    async def send_template(
        self,
        recipient: str,
        template_name: str,
        language: str,
        credentials: ChannelCredentials,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        raise ProviderError(
            f"templates are not supported on {self.channel_type.value}",
            channel=self.channel_type.value,
        )

    async def _post(self, url: str, token: str, body: dict[str, Any]) -> dict[str, Any]:
        if self._client is None:
            raise ChannelError("adapter has no HTTP client", self.channel_type.value)
        if not token:
            raise ProviderError("missing access token", channel=self.channel_type.value)
        try:
            response = await self._client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            # transport failures, timeouts, decoding errors, redirect loops
            raise ProviderError.network(e, self.channel_type.value) from e

        if response.status_code >= 400:
            raise ProviderError.from_response(response, self.channel_type.value)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"unreadable provider response: {e}",
                                channel=self.channel_type.value,
                                status_code=response.status_code) from e


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

