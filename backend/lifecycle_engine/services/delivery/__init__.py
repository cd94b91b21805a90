"""
Delivery Services

Outbound transport adapters consumed by the lifecycle executor:
- DeliveryProvider / HttpSmsProvider: SMS send + delivery-status callbacks
- ShortLinkService / HttpShortLinkService: trackable links + click callbacks
"""

from .sms_provider import (
    DeliveryProvider,
    HttpSmsProvider,
    SendResult,
    DeliveryConfigurationError,
    normalize_phone,
    record_delivery_status,
)
from .short_link import (
    ShortLinkService,
    HttpShortLinkService,
    ShortLinkError,
    shorten_or_fallback,
    record_link_click,
)

__all__ = [
    'DeliveryProvider',
    'HttpSmsProvider',
    'SendResult',
    'DeliveryConfigurationError',
    'normalize_phone',
    'record_delivery_status',
    'ShortLinkService',
    'HttpShortLinkService',
    'ShortLinkError',
    'shorten_or_fallback',
    'record_link_click',
]
