from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import requests

from .base import (
    ButtonPress,
    InboundEvent,
    Keyboard,
    MessagingError,
    OtherEvent,
    PayloadTooLargeError,
    RateLimitedError,
    TextMessage,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


def _dump_markup(keyboard: Keyboard) -> str:
    return json.dumps(keyboard, ensure_ascii=False, separators=(",", ":"))


def _chat_id_of(update: dict[str, Any]) -> Optional[str]:
    chat = (update.get("message") or {}).get("chat") or {}
    if chat.get("id") is not None:
        return str(chat["id"])
    callback_message = (update.get("callback_query") or {}).get("message") or {}
    chat = callback_message.get("chat") or {}
    if chat.get("id") is not None:
        return str(chat["id"])
    return None


def parse_update(update: dict[str, Any]) -> InboundEvent:
    """Convert one Bot API update into a workflow event."""
    event_id = int(update.get("update_id") or 0)
    destination = _chat_id_of(update)

    callback = update.get("callback_query")
    if isinstance(callback, dict):
        message = callback.get("message") or {}
        return ButtonPress(
            event_id=event_id,
            destination=destination,
            message_id=int(message.get("message_id") or 0),
            payload=str(callback.get("data") or ""),
            callback_id=str(callback.get("id") or ""),
        )

    message = update.get("message")
    if isinstance(message, dict) and isinstance(message.get("text"), str):
        return TextMessage(
            event_id=event_id,
            destination=destination,
            message_id=int(message.get("message_id") or 0),
            text=message["text"],
        )

    return OtherEvent(event_id=event_id, destination=destination)


class TelegramGateway:
    """Telegram Bot API client implementing the messaging gateway contract."""

    def __init__(
        self,
        token: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        upload_timeout: float = 600.0,
    ) -> None:
        self._base = f"{API_BASE}/bot{token}/"
        self.session = session or requests.Session()
        self.timeout = timeout
        self.upload_timeout = upload_timeout

    def _raise_for_error(self, method: str, resp: requests.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("ok"):
            return data

        code = resp.status_code
        description = resp.text[:300]
        retry_after: Optional[float] = None
        if isinstance(data, dict):
            code = int(data.get("error_code") or code)
            description = str(data.get("description") or description)
            params = data.get("parameters") or {}
            if params.get("retry_after") is not None:
                retry_after = float(params["retry_after"])

        message = f"telegram_{method}_failed: {code} {description}"
        if code == 413 or "too large" in description.lower():
            raise PayloadTooLargeError(message, status_code=413)
        if code == 429:
            if retry_after is None:
                retry_after = float(resp.headers.get("Retry-After") or 1)
            raise RateLimitedError(message, retry_after=retry_after)
        raise MessagingError(message, status_code=code)

    def _call(
        self,
        method: str,
        *,
        data: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        files: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        http_method: str = "POST",
    ) -> Any:
        try:
            resp = self.session.request(
                http_method,
                self._base + method,
                data=data,
                params=params,
                files=files,
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as exc:
            raise MessagingError(f"telegram_{method}_failed: {type(exc).__name__}: {exc}") from exc
        return self._raise_for_error(method, resp).get("result")

    def _message_id(self, result: Any) -> int:
        if isinstance(result, dict):
            return int(result.get("message_id") or 0)
        return 0

    def _upload(
        self,
        method: str,
        field_name: str,
        destination: str,
        path: Path,
        mime_type: str,
        fields: dict[str, Any],
    ) -> int:
        path = Path(path)
        if not path.is_file():
            raise MessagingError(f"telegram_{method}_failed: file does not exist: {path}")
        with path.open("rb") as handle:
            result = self._call(
                method,
                data={"chat_id": destination, **fields},
                files={field_name: (path.name, handle, mime_type)},
                timeout=self.upload_timeout,
            )
        return self._message_id(result)

    def send_text(self, destination: str, text: str, keyboard: Optional[Keyboard] = None) -> int:
        data: dict[str, Any] = {
            "chat_id": destination,
            "text": text,
            "disable_web_page_preview": "true",
        }
        if keyboard is not None:
            data["reply_markup"] = _dump_markup(keyboard)
        return self._message_id(self._call("sendMessage", data=data))

    def send_media(self, destination: str, path: Path, caption: str, keyboard: Optional[Keyboard] = None) -> int:
        fields: dict[str, Any] = {"caption": caption, "supports_streaming": "true"}
        if keyboard is not None:
            fields["reply_markup"] = _dump_markup(keyboard)
        return self._upload("sendVideo", "video", destination, path, "video/mp4", fields)

    def send_file(self, destination: str, path: Path, caption: str, mime_type: str) -> int:
        return self._upload("sendDocument", "document", destination, path, mime_type, {"caption": caption})

    def edit_keyboard(self, destination: str, message_id: int, keyboard: Keyboard) -> None:
        self._call(
            "editMessageReplyMarkup",
            data={
                "chat_id": destination,
                "message_id": str(message_id),
                "reply_markup": _dump_markup(keyboard),
            },
        )

    def acknowledge(self, callback_id: str, text: str = "") -> None:
        if not callback_id:
            return
        data: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            data["text"] = text
            data["show_alert"] = "false"
        try:
            self._call("answerCallbackQuery", data=data)
        except MessagingError as exc:
            # Acks expire after a few seconds; a late ack is not worth failing the tick.
            logger.debug("Callback ack failed: %s", exc)

    def poll_events(self, since_id: int, timeout: int) -> list[InboundEvent]:
        result = self._call(
            "getUpdates",
            params={
                "offset": int(since_id) + 1,
                "timeout": max(0, int(timeout)),
                "allowed_updates": json.dumps(["message", "callback_query"]),
            },
            timeout=max(0, int(timeout)) + 30,
            http_method="GET",
        )
        if not isinstance(result, list):
            return []
        return [parse_update(update) for update in result if isinstance(update, dict)]
