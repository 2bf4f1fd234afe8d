"""Input normalisation for the tagging conversation.

Button payloads are decoded once into a closed set of :data:`Action`
variants; free text is parsed into tags, participant handles, yes/no
choices and navigation commands.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

# Keyboard slug -> canonical tag.
TAG_PRESETS: dict[str, str] = {
    "mock": "мок",
    "summary": "резюме",
    "tasks": "задачи",
    "review": "ревью",
}

TAG_SYNONYMS: dict[str, str] = {
    "mock": "мок",
    "мок": "мок",
    "summary": "резюме",
    "резюме": "резюме",
    "tasks": "задачи",
    "задачи": "задачи",
    "review": "ревью",
    "ревью": "ревью",
    "legend": "легенда",
    "легенда": "легенда",
    "screen": "скрин",
    "screenshot": "скрин",
    "скрин": "скрин",
    "скриншот": "скрин",
    "crossmock": "кроссмок",
    "кроссмок": "кроссмок",
    "welcome": "велком",
    "велком": "велком",
}

TAG_SKIP_WORDS = frozenset({"-", "skip", "пропустить", "без тега"})
PARTICIPANT_SKIP_WORDS = frozenset({"-", "skip", "пропустить"})
YES_WORDS = frozenset({"да", "yes", "y", "+", "ok", "ага"})
NO_WORDS = frozenset({"нет", "no", "n", "-", "не", "nope"})
BACK_WORDS = frozenset({"назад", "вернуться назад", "back"})
RESTART_WORDS = frozenset({"сначала", "начать сначала", "restart", "reset"})

HANDLE_RE = re.compile(r"^@[A-Za-z0-9_]{3,32}$")
_HASHTAG_RE = re.compile(r"#([\w-]+)")
_MENTION_RE = re.compile(r"@([A-Za-z0-9_]{3,32})(?![A-Za-z0-9_])")
_BARE_HANDLE_RE = re.compile(r"^[A-Za-z0-9_]{3,32}$")
_TOKEN_SPLIT_RE = re.compile(r"[\s,;]+")
_TAG_STRIP_RE = re.compile(r"[^\w]+")


# -- actions -----------------------------------------------------------------


@dataclass(frozen=True)
class ToggleTag:
    tag: str


@dataclass(frozen=True)
class TagsDone:
    pass


@dataclass(frozen=True)
class TagsSkip:
    pass


@dataclass(frozen=True)
class ToggleParticipant:
    handle: str


@dataclass(frozen=True)
class ParticipantsDone:
    pass


@dataclass(frozen=True)
class ParticipantsSkip:
    pass


@dataclass(frozen=True)
class SummaryChoice:
    value: bool


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Restart:
    pass


Action = Union[
    ToggleTag,
    TagsDone,
    TagsSkip,
    ToggleParticipant,
    ParticipantsDone,
    ParticipantsSkip,
    SummaryChoice,
    Back,
    Restart,
]


def encode_action(action: Action) -> str:
    """Return the button payload for ``action``."""
    if isinstance(action, ToggleTag):
        for slug, tag in TAG_PRESETS.items():
            if tag == action.tag:
                return f"tag:{slug}"
        raise ValueError(f"tag {action.tag!r} has no keyboard slug")
    if isinstance(action, TagsDone):
        return "tag:done"
    if isinstance(action, TagsSkip):
        return "tag:skip"
    if isinstance(action, ToggleParticipant):
        return f"participant:toggle:{action.handle}"
    if isinstance(action, ParticipantsDone):
        return "participant:done"
    if isinstance(action, ParticipantsSkip):
        return "participant:skip"
    if isinstance(action, SummaryChoice):
        return "summary:yes" if action.value else "summary:no"
    if isinstance(action, Back):
        return "nav:back"
    if isinstance(action, Restart):
        return "nav:restart"
    raise TypeError(f"unknown action {action!r}")


def parse_payload(payload: str) -> Optional[Action]:
    """Decode a button payload; unknown payloads return None."""
    payload = (payload or "").strip()
    if payload == "tag:done":
        return TagsDone()
    if payload == "tag:skip":
        return TagsSkip()
    if payload.startswith("tag:"):
        tag = TAG_PRESETS.get(payload[len("tag:"):])
        return ToggleTag(tag) if tag else None
    if payload == "participant:done":
        return ParticipantsDone()
    if payload == "participant:skip":
        return ParticipantsSkip()
    if payload.startswith("participant:toggle:"):
        handle = payload[len("participant:toggle:"):].strip()
        return ToggleParticipant(handle) if HANDLE_RE.match(handle) else None
    if payload == "summary:yes":
        return SummaryChoice(True)
    if payload == "summary:no":
        return SummaryChoice(False)
    if payload == "nav:back":
        return Back()
    if payload == "nav:restart":
        return Restart()
    return None


# -- free text ---------------------------------------------------------------


def _norm(text: str) -> str:
    return " ".join((text or "").split()).casefold()


def normalize_tag(raw: str) -> Optional[str]:
    lower = raw.strip().lstrip("#").casefold()
    mapped = TAG_SYNONYMS.get(lower, lower)
    cleaned = _TAG_STRIP_RE.sub("", mapped)
    return cleaned or None


def parse_tags(text: str) -> list[str]:
    """Parse ``#tag`` tokens (or plain words when no hashtag is present)."""
    text = (text or "").strip()
    if not text:
        return []
    raw_tags = _HASHTAG_RE.findall(text)
    if not raw_tags:
        raw_tags = _TOKEN_SPLIT_RE.split(text)
    out: list[str] = []
    for raw in raw_tags:
        tag = normalize_tag(raw)
        if tag and tag not in out:
            out.append(tag)
    return out


def is_tags_skip(text: str) -> bool:
    return _norm(text) in TAG_SKIP_WORDS


def is_participants_skip(text: str) -> bool:
    return _norm(text) in PARTICIPANT_SKIP_WORDS


def parse_participants(text: str) -> list[str]:
    """Parse ``@handle`` mentions, or bare handle-like tokens coerced to ``@handle``."""
    text = (text or "").strip()
    if not text or is_participants_skip(text):
        return []
    out: list[str] = []
    mentions = _MENTION_RE.findall(text)
    if mentions:
        for name in mentions:
            handle = f"@{name}"
            if handle not in out:
                out.append(handle)
        return out
    for token in _TOKEN_SPLIT_RE.split(text):
        name = token.strip().lstrip("@")
        if not _BARE_HANDLE_RE.match(name):
            continue
        handle = f"@{name}"
        if handle not in out:
            out.append(handle)
    return out


def parse_yes_no(text: str) -> Optional[bool]:
    value = _norm(text)
    if value in YES_WORDS:
        return True
    if value in NO_WORDS:
        return False
    return None


def parse_navigation(text: str) -> Optional[Action]:
    value = _norm(text)
    if value in BACK_WORDS:
        return Back()
    if value in RESTART_WORDS:
        return Restart()
    return None
