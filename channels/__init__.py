"""Channel adapters for WhatsApp, Instagram Direct and Facebook Messenger."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    ProviderError,
    InputSanitizer,
    RETRYABLE_PROVIDER_CODES,
)
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.meta_adapter import InstagramAdapter, MessengerAdapter
from channels.normalizer import EventNormalizer
from channels.sender import ChannelSender, create_channel_sender

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError", "ProviderError",
    "InputSanitizer", "RETRYABLE_PROVIDER_CODES",
    "WhatsAppAdapter", "InstagramAdapter", "MessengerAdapter",
    "EventNormalizer", "ChannelSender", "create_channel_sender",
]
