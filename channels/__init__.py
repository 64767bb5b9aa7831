"""Channel transports for all supported messaging channels."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    NotAuthorizedError,
    RateLimitedError,
    TransientError,
    PermanentError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
    error_for_status,
)
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.telegram_adapter import TelegramAdapter
from channels.instagram_adapter import InstagramAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry",
    "ChannelError", "NotAuthorizedError", "RateLimitedError", "TransientError",
    "PermanentError", "CircuitOpenError", "error_for_status",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "WhatsAppAdapter", "TelegramAdapter", "InstagramAdapter",
]
