"""Channel contracts and the reference adapters (WhatsApp, email, ledger)."""
from channels.base import (
    ChannelError,
    DeliveryError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
    ReplySender,
    MailSender,
    LedgerWriter,
)
from channels.email_adapter import EmailAdapter
from channels.whatsapp_adapter import GreenApiWhatsAppAdapter
from channels.ledger import InMemoryLedger

__all__ = [
    "ChannelError", "DeliveryError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "ReplySender", "MailSender", "LedgerWriter",
    "EmailAdapter", "GreenApiWhatsAppAdapter", "InMemoryLedger",
]
