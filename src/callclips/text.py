"""Text helpers: captions, size/duration formatting and chunking."""

from __future__ import annotations

import re
from typing import Iterable

EMPTY_MARK = "—"
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def format_tags(tags: Iterable[str]) -> str:
    tags = list(tags)
    if not tags:
        return EMPTY_MARK
    return ", ".join(f"#{tag}" for tag in tags)


def format_participants(participants: Iterable[str]) -> str:
    participants = list(participants)
    if not participants:
        return EMPTY_MARK
    return ", ".join(participants)


def build_final_caption(tags: Iterable[str], participants: Iterable[str], date: str) -> str:
    return f"теги: {format_tags(tags)}\nучастники: {format_participants(participants)}\nдата: {date}"


def format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_file_size(num_bytes: int) -> str:
    num_bytes = max(0, int(num_bytes))
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    if num_bytes < 1024 * 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f} MB"
    return f"{num_bytes / (1024 * 1024 * 1024):.2f} GB"


def truncate(text: str, max_chars: int = 3800) -> str:
    text = (text or "").strip()
    if not text:
        return EMPTY_MARK
    if len(text) <= max_chars:
        return text
    return text[: max(100, max_chars - 20)] + "\n...\n[обрезано]"


def split_text(text: str, max_length: int) -> list[str]:
    """Split text into chunks of at most ``max_length`` chars.

    Paragraph boundaries are preferred, then sentence boundaries. A single
    sentence longer than the limit is kept whole.
    """
    text = (text or "").strip()
    if not text:
        return []
    max_length = max(1000, int(max_length))
    if len(text) <= max_length:
        return [text]

    parts: list[str] = []
    current = ""

    def add_sentences(paragraph: str) -> None:
        nonlocal current
        for sentence in _SENTENCE_SPLIT.split(paragraph):
            sentence = sentence.strip()
            if not sentence:
                continue
            if not current:
                current = sentence
            elif len(current) + 1 + len(sentence) <= max_length:
                current = f"{current} {sentence}"
            else:
                parts.append(current)
                current = sentence

    for paragraph in re.split(r"\n{2,}", text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if not current:
            if len(paragraph) <= max_length:
                current = paragraph
            else:
                add_sentences(paragraph)
            continue
        if len(current) + 2 + len(paragraph) <= max_length:
            current = f"{current}\n\n{paragraph}"
            continue
        parts.append(current)
        current = ""
        if len(paragraph) <= max_length:
            current = paragraph
        else:
            add_sentences(paragraph)

    if current:
        parts.append(current)
    return parts
