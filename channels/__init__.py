"""WhatsApp channel: webhook decoding, resilient outbound delivery, inbound dedup."""
from channels.base import (
    ChannelError,
    CircuitOpenError,
    FatalDeliveryError,
    OutboundTransport,
    SendResult,
    TransientDeliveryError,
)
from channels.dedup import InboundGate, InMemoryDedupCache, RedisDedupCache, create_inbound_gate
from channels.messenger import ResilientMessenger
from channels.metrics import ResilienceMetrics
from channels.resilience import CircuitBreaker, CircuitState, DeliveryOutcome, ResiliencePipeline
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.whatsapp_client import WhatsAppClient

__all__ = [
    "ChannelError", "CircuitOpenError", "FatalDeliveryError", "TransientDeliveryError",
    "OutboundTransport", "SendResult",
    "InboundGate", "InMemoryDedupCache", "RedisDedupCache", "create_inbound_gate",
    "ResilientMessenger", "ResilienceMetrics",
    "CircuitBreaker", "CircuitState", "DeliveryOutcome", "ResiliencePipeline",
    "WhatsAppAdapter", "WhatsAppClient",
]
