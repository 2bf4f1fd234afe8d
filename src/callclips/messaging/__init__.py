from .base import (
    ButtonPress,
    InboundEvent,
    Keyboard,
    MessagingError,
    MessagingGateway,
    OtherEvent,
    PayloadTooLargeError,
    RateLimitedError,
    TextMessage,
)
from .telegram import TelegramGateway

__all__ = [
    "ButtonPress",
    "InboundEvent",
    "Keyboard",
    "MessagingError",
    "MessagingGateway",
    "OtherEvent",
    "PayloadTooLargeError",
    "RateLimitedError",
    "TelegramGateway",
    "TextMessage",
]
