"""Inline keyboards for each conversation stage."""

from __future__ import annotations

from typing import Iterable

from .messaging import Keyboard
from .parsing import (
    TAG_PRESETS,
    Back,
    ParticipantsDone,
    ParticipantsSkip,
    Restart,
    SummaryChoice,
    TagsDone,
    TagsSkip,
    ToggleParticipant,
    ToggleTag,
    encode_action,
)

CHECK = "✅ "


def _button(text: str, action) -> dict[str, str]:
    return {"text": text, "callback_data": encode_action(action)}


def _nav_row(*, back: bool) -> list[dict[str, str]]:
    row = []
    if back:
        row.append(_button("« Назад", Back()))
    row.append(_button("Сначала", Restart()))
    return row


def build_tags_keyboard(selected: Iterable[str]) -> Keyboard:
    chosen = set(selected)
    tags = list(TAG_PRESETS.values())
    rows = []
    for i in range(0, len(tags), 2):
        rows.append(
            [_button((CHECK if tag in chosen else "") + tag, ToggleTag(tag)) for tag in tags[i:i + 2]]
        )
    rows.append([_button("Готово", TagsDone()), _button("Без тега", TagsSkip())])
    return {"inline_keyboard": rows}


def build_participants_keyboard(presets: Iterable[str], selected: Iterable[str]) -> Keyboard:
    chosen = set(selected)
    presets = list(presets)
    rows = []
    for i in range(0, len(presets), 2):
        rows.append(
            [
                _button((CHECK if handle in chosen else "") + handle, ToggleParticipant(handle))
                for handle in presets[i:i + 2]
            ]
        )
    rows.append([_button("Готово", ParticipantsDone()), _button("Пропустить", ParticipantsSkip())])
    rows.append(_nav_row(back=True))
    return {"inline_keyboard": rows}


def build_summary_keyboard() -> Keyboard:
    return {
        "inline_keyboard": [
            [_button("Да", SummaryChoice(True)), _button("Нет", SummaryChoice(False))],
            _nav_row(back=True),
        ]
    }
