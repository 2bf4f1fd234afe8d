from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Optional

import pytest

from callclips.ai import SummaryResult
from callclips.config import WorkerConfig
from callclips.ffmpeg import MediaToolError
from callclips.messaging import ButtonPress, OtherEvent, TextMessage
from callclips.reminders import ReminderScheduler
from callclips.state import PendingItem, Stage, StateStore

START_TS = 1_700_000_000.0
CHAT = "42"


class FakeClock:
    def __init__(self, now: float = START_TS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway:
    """In-memory messaging gateway recording every call."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.edits: list[dict[str, Any]] = []
        self.acks: list[tuple[str, str]] = []
        self.polls: list[int] = []
        self.failures: dict[str, list[Exception]] = {}
        self._events: list[Any] = []
        self._next_message_id = 100
        self._next_event_id = 1

    # -- test helpers --------------------------------------------------------

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str) -> None:
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def _message_id(self) -> int:
        self._next_message_id += 1
        return self._next_message_id

    def press(self, message_id: int, payload: str, destination: str = CHAT) -> ButtonPress:
        event = ButtonPress(
            event_id=self._next_event_id,
            destination=destination,
            message_id=message_id,
            payload=payload,
            callback_id=f"cb{self._next_event_id}",
        )
        self._next_event_id += 1
        self._events.append(event)
        return event

    def say(self, text: str, destination: str = CHAT, message_id: Optional[int] = None) -> TextMessage:
        event = TextMessage(
            event_id=self._next_event_id,
            destination=destination,
            message_id=message_id if message_id is not None else self._message_id(),
            text=text,
        )
        self._next_event_id += 1
        self._events.append(event)
        return event

    def other(self, destination: Optional[str] = CHAT) -> OtherEvent:
        event = OtherEvent(event_id=self._next_event_id, destination=destination)
        self._next_event_id += 1
        self._events.append(event)
        return event

    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent if m["kind"] == "text"]

    def last(self, kind: Optional[str] = None) -> dict[str, Any]:
        items = [m for m in self.sent if kind is None or m["kind"] == kind]
        return items[-1]

    # -- gateway contract ----------------------------------------------------

    def send_text(self, destination, text, keyboard=None) -> int:
        self._maybe_fail("send_text")
        message_id = self._message_id()
        self.sent.append(
            {"kind": "text", "destination": destination, "text": text, "keyboard": keyboard, "id": message_id}
        )
        return message_id

    def send_media(self, destination, path, caption, keyboard=None) -> int:
        self._maybe_fail("send_media")
        message_id = self._message_id()
        self.sent.append(
            {
                "kind": "media",
                "destination": destination,
                "path": Path(path),
                "existed": Path(path).exists(),
                "caption": caption,
                "keyboard": keyboard,
                "id": message_id,
            }
        )
        return message_id

    def send_file(self, destination, path, caption, mime_type) -> int:
        self._maybe_fail("send_file")
        message_id = self._message_id()
        path = Path(path)
        content = path.read_text(encoding="utf-8") if mime_type == "text/plain" and path.exists() else None
        self.sent.append(
            {
                "kind": "file",
                "destination": destination,
                "path": path,
                "caption": caption,
                "mime_type": mime_type,
                "content": content,
                "id": message_id,
            }
        )
        return message_id

    def edit_keyboard(self, destination, message_id, keyboard) -> None:
        self._maybe_fail("edit_keyboard")
        self.edits.append({"destination": destination, "message_id": message_id, "keyboard": keyboard})

    def acknowledge(self, callback_id, text="") -> None:
        self.acks.append((callback_id, text))

    def poll_events(self, since_id, timeout):
        self._maybe_fail("poll_events")
        self.polls.append(since_id)
        events = [e for e in self._events if e.event_id > since_id]
        self._events = []
        return events


class FakeMediaTool:
    """Media tool writing small placeholder files instead of running ffmpeg."""

    def __init__(self, duration: float = 600.0) -> None:
        self.duration = duration
        self.clips: list[tuple[Path, float, float]] = []
        self.splits: list[int] = []
        self.part_size: Optional[Any] = None
        self.probe_error: Optional[Exception] = None
        self.split_error: Optional[Exception] = None

    def probe_duration(self, path: Path) -> float:
        if self.probe_error is not None:
            raise self.probe_error
        return self.duration

    def extract_clip(self, path: Path, out_path: Path, start: float, length: float) -> Path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(b"clip")
        self.clips.append((out_path, start, length))
        return out_path

    def split_into_segments(self, path: Path, out_dir: Path, prefix: str, segment_seconds: int) -> list[Path]:
        self.splits.append(segment_seconds)
        if self.split_error is not None:
            raise self.split_error
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        count = max(1, math.ceil(self.duration / segment_seconds))
        size = self.part_size(segment_seconds) if self.part_size else 10
        parts = []
        for i in range(count):
            part = out_dir / f"{prefix}_{i:03d}.mp4"
            with part.open("wb") as fh:
                fh.truncate(int(size))
            parts.append(part)
        return parts

    def extract_audio_chunks(self, path, out_dir, prefix, chunk_seconds):
        raise MediaToolError("not used in tests")


class FakeAI:
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.calls: list[Path] = []
        self.result = SummaryResult(transcript="полный текст созвона", summary="короткое саммари")
        self.error: Optional[Exception] = None

    def is_enabled(self) -> bool:
        return self.enabled

    def transcribe_and_summarize(self, path: Path) -> SummaryResult:
        self.calls.append(Path(path))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def media() -> FakeMediaTool:
    return FakeMediaTool()


@pytest.fixture
def ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def state(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "data" / "state.json")


@pytest.fixture
def reminders() -> ReminderScheduler:
    # start == end disables quiet hours.
    return ReminderScheduler(base_seconds=300, max_seconds=14400, timezone="UTC", night_start_hour=0, night_end_hour=0)


@pytest.fixture
def config(tmp_path: Path) -> WorkerConfig:
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    return WorkerConfig(
        telegram_token="test-token",
        recordings_dir=recordings,
        state_file=tmp_path / "data" / "state.json",
        temp_dir=tmp_path / "tmp",
        telegram_chat_id=CHAT,
        file_min_age_seconds=0,
        stability_wait_seconds=0,
        reminder_timezone="UTC",
        reminder_night_start_hour=0,
        reminder_night_end_hour=0,
    )


def make_pending(stage: Stage = Stage.AWAITING_TAGS, **fields: Any) -> PendingItem:
    fields.setdefault("key", "2024/call_2024-05-01-10-00-00.mp4")
    fields.setdefault("destination", CHAT)
    fields.setdefault("date", "2024-05-01")
    return PendingItem(stage=stage, **fields)


