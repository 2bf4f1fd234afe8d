"""Messaging gateway contract: inbound events, errors and the client protocol."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Union

Keyboard = dict[str, Any]


class MessagingError(RuntimeError):
    """A send/edit/poll call failed on the transport."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayloadTooLargeError(MessagingError):
    """The transport rejected an upload because of its size."""


class RateLimitedError(MessagingError):
    """The transport asked us to slow down for ``retry_after`` seconds."""

    def __init__(self, message: str, *, retry_after: float, status_code: Optional[int] = 429) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = max(1.0, float(retry_after))


@dataclass(frozen=True)
class ButtonPress:
    event_id: int
    destination: Optional[str]
    message_id: int
    payload: str
    callback_id: str = ""


@dataclass(frozen=True)
class TextMessage:
    event_id: int
    destination: Optional[str]
    message_id: int
    text: str


@dataclass(frozen=True)
class OtherEvent:
    """Any update the workflow does not act on; still advances the watermark."""

    event_id: int
    destination: Optional[str] = None


InboundEvent = Union[ButtonPress, TextMessage, OtherEvent]


class MessagingGateway(Protocol):
    def send_text(self, destination: str, text: str, keyboard: Optional[Keyboard] = None) -> int:
        ...

    def send_media(self, destination: str, path: Path, caption: str, keyboard: Optional[Keyboard] = None) -> int:
        ...

    def send_file(self, destination: str, path: Path, caption: str, mime_type: str) -> int:
        ...

    def edit_keyboard(self, destination: str, message_id: int, keyboard: Keyboard) -> None:
        ...

    def acknowledge(self, callback_id: str, text: str = "") -> None:
        ...

    def poll_events(self, since_id: int, timeout: int) -> list[InboundEvent]:
        ...
