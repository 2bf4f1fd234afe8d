"""Transcription and summary backends."""

from .base import AIBackend, AIBackendError, DisabledAIBackend, SummaryResult

__all__ = [
    "AIBackend",
    "AIBackendError",
    "DisabledAIBackend",
    "SummaryResult",
]
