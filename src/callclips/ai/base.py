"""Contract for the transcription + summary backend."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class AIBackendError(RuntimeError):
    """Transcription or summarisation failed."""


@dataclass(frozen=True)
class SummaryResult:
    transcript: str
    summary: str
    chunks: int = 1


class AIBackend(Protocol):
    def is_enabled(self) -> bool:
        ...

    def transcribe_and_summarize(self, path: Path) -> SummaryResult:
        ...


class DisabledAIBackend:
    """Used when no API key is configured."""

    def is_enabled(self) -> bool:
        return False

    def transcribe_and_summarize(self, path: Path) -> SummaryResult:
        raise AIBackendError("AI backend is disabled")
