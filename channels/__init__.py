"""Delivery clients for the supported messaging transports."""
from channels.base import (
    DeliveryClient,
    ChannelError,
    TransientDeliveryError,
    PermanentDeliveryError,
)
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "DeliveryClient", "ChannelError",
    "TransientDeliveryError", "PermanentDeliveryError",
    "WhatsAppAdapter",
]
