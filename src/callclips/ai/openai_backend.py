"""OpenAI transcription + summary backend.

Audio is extracted with ffmpeg in fixed-length chunks, each chunk is sent
to the speech-to-text endpoint, and the joined transcript is summarised
with a chat model (map-reduce over text chunks for long calls).
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

from openai import OpenAI, OpenAIError

from ..ffmpeg import FFmpegMediaTool, MediaToolError
from ..text import split_text
from .base import AIBackendError, SummaryResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "Ты помощник для пост-обработки созвонов. Пиши структурированно и кратко."

SINGLE_SUMMARY_PROMPT = (
    "Сделай короткое саммари созвона на русском.\n"
    "Формат:\n"
    "1) Краткое резюме (2-4 пункта)\n"
    "2) Ключевые решения\n"
    "3) Задачи/экшены (если есть)\n"
    "4) Риски/блокеры (если есть)\n"
    "Пиши только по фактам из транскрипта."
)

PARTIAL_SUMMARY_PROMPT = (
    "Ниже часть транскрипта созвона (часть {index} из {total}).\n"
    "Сделай краткую выжимку: факты, решения, задачи, риски."
)

MERGE_SUMMARY_PROMPT = (
    "Объедини частичные выжимки созвона в одно итоговое саммари на русском.\n"
    "Формат:\n"
    "1) Краткое резюме (2-4 пункта)\n"
    "2) Ключевые решения\n"
    "3) Задачи/экшены\n"
    "4) Риски/блокеры"
)


class OpenAIBackend:
    def __init__(
        self,
        *,
        api_key: Optional[str],
        temp_dir: Path,
        transcribe_model: str = "gpt-4o-mini-transcribe",
        summary_model: str = "gpt-4o-mini",
        language: Optional[str] = None,
        audio_chunk_seconds: int = 900,
        summary_chunk_chars: int = 30000,
        media: Optional[FFmpegMediaTool] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.temp_dir = Path(temp_dir)
        self.transcribe_model = transcribe_model
        self.summary_model = summary_model
        self.language = language
        self.audio_chunk_seconds = max(60, int(audio_chunk_seconds))
        self.summary_chunk_chars = max(5000, int(summary_chunk_chars))
        self.media = media or FFmpegMediaTool()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def is_enabled(self) -> bool:
        return self.api_key is not None

    def transcribe_and_summarize(self, path: Path) -> SummaryResult:
        if not self.is_enabled():
            raise AIBackendError("OpenAI backend is disabled (no API key)")

        prefix = "audio_" + hashlib.sha1(str(path).encode("utf-8")).hexdigest()[:12]
        try:
            chunks = self.media.extract_audio_chunks(path, self.temp_dir, prefix, self.audio_chunk_seconds)
        except MediaToolError as exc:
            raise AIBackendError(f"audio extraction failed: {exc}") from exc
        if not chunks:
            raise AIBackendError("no audio chunks produced")

        parts: list[str] = []
        try:
            for index, chunk in enumerate(chunks, start=1):
                logger.info("Transcribing chunk %d/%d of %s", index, len(chunks), path.name)
                text = self._transcribe_chunk(chunk).strip()
                if text:
                    parts.append(text)
        finally:
            for chunk in chunks:
                chunk.unlink(missing_ok=True)

        transcript = "\n\n".join(parts).strip()
        if not transcript:
            raise AIBackendError("transcription returned empty text")

        summary = self._summarize(transcript).strip()
        if not summary:
            raise AIBackendError("summary came back empty")
        return SummaryResult(transcript=transcript, summary=summary, chunks=len(chunks))

    def _transcribe_chunk(self, chunk: Path) -> str:
        kwargs = {"model": self.transcribe_model}
        if self.language:
            kwargs["language"] = self.language
        try:
            with chunk.open("rb") as audio_file:
                response = self.client.audio.transcriptions.create(file=audio_file, **kwargs)
        except OpenAIError as exc:
            raise AIBackendError(f"transcription request failed: {exc}") from exc
        return str(getattr(response, "text", "") or "")

    def _summarize(self, transcript: str) -> str:
        chunks = split_text(transcript, self.summary_chunk_chars)
        if len(chunks) == 1:
            return self._complete(chunks[0], SINGLE_SUMMARY_PROMPT)

        partials: list[str] = []
        for index, chunk in enumerate(chunks, start=1):
            partial = self._complete(chunk, PARTIAL_SUMMARY_PROMPT.format(index=index, total=len(chunks)))
            if partial.strip():
                partials.append(partial.strip())
        if not partials:
            raise AIBackendError("all partial summaries came back empty")
        return self._complete("\n\n---\n\n".join(partials), MERGE_SUMMARY_PROMPT)

    def _complete(self, text: str, instruction: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.summary_model,
                temperature=0.2,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"{instruction}\n\nТранскрипт:\n{text}"},
                ],
            )
        except OpenAIError as exc:
            raise AIBackendError(f"summary request failed: {exc}") from exc
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()
