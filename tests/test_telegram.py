"""Tests for the Telegram Bot API gateway (no network, fake session)."""

import json
from pathlib import Path

import pytest
import requests

from callclips.messaging import (
    ButtonPress,
    MessagingError,
    OtherEvent,
    PayloadTooLargeError,
    RateLimitedError,
    TelegramGateway,
    TextMessage,
)
from callclips.messaging.telegram import parse_update


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _ok(result):
    return FakeResponse(200, {"ok": True, "result": result})


def test_parse_callback_update():
    event = parse_update(
        {
            "update_id": 7,
            "callback_query": {
                "id": "cbq",
                "data": "tag:mock",
                "message": {"message_id": 55, "chat": {"id": 42}},
            },
        }
    )
    assert event == ButtonPress(event_id=7, destination="42", message_id=55, payload="tag:mock", callback_id="cbq")


def test_parse_text_and_other_updates():
    text = parse_update({"update_id": 8, "message": {"message_id": 60, "chat": {"id": 42}, "text": "#мок"}})
    assert text == TextMessage(event_id=8, destination="42", message_id=60, text="#мок")

    sticker = parse_update({"update_id": 9, "message": {"message_id": 61, "chat": {"id": 42}, "sticker": {}}})
    assert sticker == OtherEvent(event_id=9, destination="42")


def test_send_text_returns_message_id_and_encodes_keyboard():
    session = FakeSession(_ok({"message_id": 101}))
    gateway = TelegramGateway("T", session=session)
    keyboard = {"inline_keyboard": [[{"text": "Да", "callback_data": "summary:yes"}]]}

    assert gateway.send_text("42", "привет", keyboard) == 101
    call = session.calls[0]
    assert call["url"].endswith("/botT/sendMessage")
    assert call["data"]["chat_id"] == "42"
    assert json.loads(call["data"]["reply_markup"]) == keyboard


def test_poll_events_uses_offset_after_watermark():
    session = FakeSession(_ok([{"update_id": 11, "message": {"message_id": 1, "chat": {"id": 42}, "text": "hi"}}]))
    gateway = TelegramGateway("T", session=session)
    events = gateway.poll_events(10, 2)
    assert [e.event_id for e in events] == [11]
    assert session.calls[0]["params"]["offset"] == 11
    assert session.calls[0]["method"] == "GET"


def test_payload_too_large_is_distinguished(tmp_path: Path):
    video = tmp_path / "big.mp4"
    video.write_bytes(b"x")
    session = FakeSession(FakeResponse(413, None, text="Request Entity Too Large"))
    gateway = TelegramGateway("T", session=session)
    with pytest.raises(PayloadTooLargeError):
        gateway.send_media("42", video, "caption")


def test_too_large_description_is_distinguished(tmp_path: Path):
    doc = tmp_path / "big.mp4"
    doc.write_bytes(b"x")
    session = FakeSession(FakeResponse(400, {"ok": False, "error_code": 400, "description": "Bad Request: file is too large"}))
    gateway = TelegramGateway("T", session=session)
    with pytest.raises(PayloadTooLargeError):
        gateway.send_file("42", doc, "caption", "video/mp4")


def test_rate_limit_carries_retry_after():
    session = FakeSession(
        FakeResponse(
            429,
            {"ok": False, "error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 17}},
        )
    )
    gateway = TelegramGateway("T", session=session)
    with pytest.raises(RateLimitedError) as info:
        gateway.edit_keyboard("42", 5, {"inline_keyboard": []})
    assert info.value.retry_after == 17


def test_transport_errors_become_messaging_errors():
    session = FakeSession(requests.ConnectionError("refused"))
    gateway = TelegramGateway("T", session=session)
    with pytest.raises(MessagingError):
        gateway.send_text("42", "hi")


def test_missing_upload_file_is_a_messaging_error(tmp_path: Path):
    gateway = TelegramGateway("T", session=FakeSession())
    with pytest.raises(MessagingError):
        gateway.send_file("42", tmp_path / "nope.txt", "c", "text/plain")


def test_failed_acknowledge_is_swallowed():
    session = FakeSession(FakeResponse(400, {"ok": False, "error_code": 400, "description": "query is too old"}))
    gateway = TelegramGateway("T", session=session)
    gateway.acknowledge("cbq", "ok")
    assert session.calls[0]["data"]["callback_query_id"] == "cbq"
