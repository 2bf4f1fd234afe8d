"""Durable workflow state: completed recordings, the single pending item,
the inbound event watermark and the conversation destination.

The whole document lives in one JSON file that is rewritten through a
temp file and ``os.replace`` so a reader never sees a partial write.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .utils import utc_iso

logger = logging.getLogger(__name__)


class StateWriteError(RuntimeError):
    """Raised when the state file cannot be written. Fatal to the worker."""


class StateLockedError(RuntimeError):
    """Raised when another worker already holds the state lock."""


class Stage(str, Enum):
    AWAITING_TAGS = "awaiting_tags"
    AWAITING_PARTICIPANTS = "awaiting_participants"
    AWAITING_SUMMARY_CHOICE = "awaiting_summary_choice"
    READY_TO_FINALIZE = "ready_to_finalize"


TRANSCRIPTION_STATUSES = ("disabled", "ok", "failed", "skipped_by_user")


def _opt_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        text = str(item)
        if text and text not in out:
            out.append(text)
    return out


@dataclass
class PendingItem:
    """Conversation state of the one recording currently in flight."""

    key: str
    destination: str
    stage: Stage = Stage.AWAITING_TAGS
    date: str = ""
    created_at: str = field(default_factory=utc_iso)

    tags: list[str] = field(default_factory=list)
    tags_skipped: bool = False
    participants: list[str] = field(default_factory=list)
    participants_finalized: bool = False
    summary_requested: Optional[bool] = None

    # Message ids of the prompt currently active for each stage.
    tags_prompt_id: Optional[int] = None
    participants_prompt_id: Optional[int] = None
    summary_prompt_id: Optional[int] = None

    next_reminder_at: Optional[float] = None
    reminder_attempt: int = 0
    last_reminder_at: Optional[float] = None

    last_toggle_action: Optional[str] = None
    last_toggle_at: Optional[float] = None
    markup_retry_at: Optional[float] = None

    next_retry_at: Optional[float] = None
    retry_notice_sent: bool = False
    parts_notice_sent: bool = False
    delivered: bool = False

    def prompt_id_for_stage(self) -> Optional[int]:
        if self.stage == Stage.AWAITING_TAGS:
            return self.tags_prompt_id
        if self.stage == Stage.AWAITING_PARTICIPANTS:
            return self.participants_prompt_id
        if self.stage == Stage.AWAITING_SUMMARY_CHOICE:
            return self.summary_prompt_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "destination": self.destination,
            "stage": self.stage.value,
            "date": self.date,
            "created_at": self.created_at,
            "tags": list(self.tags),
            "tags_skipped": self.tags_skipped,
            "participants": list(self.participants),
            "participants_finalized": self.participants_finalized,
            "summary_requested": self.summary_requested,
            "tags_prompt_id": self.tags_prompt_id,
            "participants_prompt_id": self.participants_prompt_id,
            "summary_prompt_id": self.summary_prompt_id,
            "next_reminder_at": self.next_reminder_at,
            "reminder_attempt": self.reminder_attempt,
            "last_reminder_at": self.last_reminder_at,
            "last_toggle_action": self.last_toggle_action,
            "last_toggle_at": self.last_toggle_at,
            "markup_retry_at": self.markup_retry_at,
            "next_retry_at": self.next_retry_at,
            "retry_notice_sent": self.retry_notice_sent,
            "parts_notice_sent": self.parts_notice_sent,
            "delivered": self.delivered,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingItem":
        key = str(payload.get("key") or "")
        destination = str(payload.get("destination") or "")
        if not key or not destination:
            raise ValueError("pending item requires key and destination")
        return cls(
            key=key,
            destination=destination,
            stage=Stage(str(payload.get("stage") or Stage.AWAITING_TAGS.value)),
            date=str(payload.get("date") or ""),
            created_at=str(payload.get("created_at") or utc_iso()),
            tags=_str_list(payload.get("tags")),
            tags_skipped=bool(payload.get("tags_skipped", False)),
            participants=_str_list(payload.get("participants")),
            participants_finalized=bool(payload.get("participants_finalized", False)),
            summary_requested=_opt_bool(payload.get("summary_requested")),
            tags_prompt_id=_opt_int(payload.get("tags_prompt_id")),
            participants_prompt_id=_opt_int(payload.get("participants_prompt_id")),
            summary_prompt_id=_opt_int(payload.get("summary_prompt_id")),
            next_reminder_at=_opt_float(payload.get("next_reminder_at")),
            reminder_attempt=int(payload.get("reminder_attempt") or 0),
            last_reminder_at=_opt_float(payload.get("last_reminder_at")),
            last_toggle_action=payload.get("last_toggle_action") or None,
            last_toggle_at=_opt_float(payload.get("last_toggle_at")),
            markup_retry_at=_opt_float(payload.get("markup_retry_at")),
            next_retry_at=_opt_float(payload.get("next_retry_at")),
            retry_notice_sent=bool(payload.get("retry_notice_sent", False)),
            parts_notice_sent=bool(payload.get("parts_notice_sent", False)),
            delivered=bool(payload.get("delivered", False)),
        )


@dataclass(frozen=True)
class CompletedItem:
    """Immutable record of a recording that went through the whole workflow."""

    key: str
    processed_at: str
    size: Optional[int]
    mtime: Optional[int]
    tags: tuple[str, ...]
    participants: tuple[str, ...]
    date: str
    summary_requested: bool
    transcription_status: str = "disabled"
    transcript_preview: Optional[str] = None
    transcript_chars: int = 0
    summary: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed_at": self.processed_at,
            "size": self.size,
            "mtime": self.mtime,
            "tags": list(self.tags),
            "participants": list(self.participants),
            "date": self.date,
            "summary_requested": self.summary_requested,
            "transcription_status": self.transcription_status,
            "transcript_preview": self.transcript_preview,
            "transcript_chars": self.transcript_chars,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, key: str, payload: dict[str, Any]) -> "CompletedItem":
        return cls(
            key=key,
            processed_at=str(payload.get("processed_at") or ""),
            size=_opt_int(payload.get("size")),
            mtime=_opt_int(payload.get("mtime")),
            tags=tuple(_str_list(payload.get("tags"))),
            participants=tuple(_str_list(payload.get("participants"))),
            date=str(payload.get("date") or ""),
            summary_requested=bool(payload.get("summary_requested", False)),
            transcription_status=str(payload.get("transcription_status") or "disabled"),
            transcript_preview=payload.get("transcript_preview"),
            transcript_chars=int(payload.get("transcript_chars") or 0),
            summary=payload.get("summary"),
        )


class StateStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._completed: dict[str, dict[str, Any]] = {}
        self._pending: Optional[PendingItem] = None
        self._watermark = 0
        self._destination: Optional[str] = None
        self._load()

    def _load(self) -> None:
        if not self.path.is_file():
            return
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot read state file %s, starting empty: %s", self.path, exc)
            return
        if not raw.strip():
            return
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("State file %s is invalid JSON, starting with empty state: %s", self.path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("State file %s is not a JSON object, starting with empty state.", self.path)
            return

        completed = data.get("completed")
        if isinstance(completed, dict):
            self._completed = {str(k): v for k, v in completed.items() if isinstance(v, dict)}

        pending = data.get("pending")
        if isinstance(pending, dict):
            try:
                self._pending = PendingItem.from_dict(pending)
            except (TypeError, ValueError) as exc:
                logger.warning("Dropping malformed pending item from state: %s", exc)

        self._watermark = _opt_int(data.get("watermark")) or 0
        destination = data.get("destination")
        self._destination = None if destination in (None, "") else str(destination)

    # -- completed ---------------------------------------------------------

    def is_completed(self, key: str) -> bool:
        return key in self._completed

    def mark_completed(self, item: CompletedItem) -> None:
        if item.key in self._completed:
            logger.warning("Completion record for %s already exists, keeping the original.", item.key)
            return
        self._completed[item.key] = item.to_dict()

    def get_completed(self, key: str) -> Optional[CompletedItem]:
        payload = self._completed.get(key)
        if payload is None:
            return None
        return CompletedItem.from_dict(key, payload)

    def completed_keys(self) -> list[str]:
        return sorted(self._completed)

    # -- pending -----------------------------------------------------------

    def get_pending(self) -> Optional[PendingItem]:
        return self._pending

    def set_pending(self, item: PendingItem) -> None:
        if self._pending is not None and self._pending.key != item.key:
            raise RuntimeError(
                f"pending item {self._pending.key!r} must be cleared before starting {item.key!r}"
            )
        self._pending = item

    def clear_pending(self) -> None:
        self._pending = None

    # -- watermark / destination ------------------------------------------

    @property
    def watermark(self) -> int:
        return self._watermark

    def advance_watermark(self, event_id: int) -> None:
        self._watermark = max(self._watermark, int(event_id))

    @property
    def destination(self) -> Optional[str]:
        return self._destination

    def set_destination(self, destination: str) -> None:
        self._destination = str(destination)

    # -- persistence -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self._completed,
            "pending": self._pending.to_dict() if self._pending is not None else None,
            "watermark": self._watermark,
            "destination": self._destination,
        }

    def save(self) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
            with tmp.open("w", encoding="utf-8") as handle:
                handle.write(payload + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise StateWriteError(f"failed to write state file {self.path}: {exc}") from exc


class StateLock:
    """Advisory single-instance lock next to the state file.

    Usage:
        with StateLock(state_path):
            ...  # only one worker gets here per state file
    """

    def __init__(self, state_path: Path) -> None:
        self.path = Path(state_path).with_name(Path(state_path).name + ".lock")
        self._handle = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise StateLockedError(f"another worker holds {self.path}") from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "StateLock":
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()
