"""Top-level worker: discovery, preview, finalize and the tick loop.

One tick runs, in order: inbound event batch, finalize attempt, reminder
check and (at most every ``poll_interval_seconds``) a discovery scan. Only
one recording is ever in flight, so nothing here runs concurrently.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .ai import AIBackend, AIBackendError, DisabledAIBackend
from .config import WorkerConfig
from .conversation import ConversationEngine
from .delivery import DeliveryRetrier
from .ffmpeg import FFmpegMediaTool, MediaToolError
from .files import (
    clip_temp_path,
    detect_recording_datetime,
    find_recordings,
    is_stable,
    relative_key,
    resolve_key,
    write_transcript_file,
)
from .keyboards import build_tags_keyboard
from .messaging import MessagingError, MessagingGateway, PayloadTooLargeError, TelegramGateway
from .reminders import ReminderScheduler
from .state import CompletedItem, PendingItem, Stage, StateStore, StateWriteError
from .text import build_final_caption, format_duration, format_file_size, truncate
from .utils import utc_iso

logger = logging.getLogger(__name__)

DELIVERY_RETRY_SECONDS = 60
SUMMARY_MAX_CHARS = 3800
TRANSCRIPT_PREVIEW_CHARS = 2000

DELIVERY_FAILED_NOTICE = "Не удалось отправить полный файл. Повторю автоматически через минуту."
AI_FAILED_NOTICE = "Не удалось получить транскрипт/саммари через OpenAI."


def preview_caption(date: str, time_of_day: str, duration: float) -> str:
    return (
        "Новый созвон\n"
        f"дата: {date}\n"
        f"время: {time_of_day}\n"
        f"длительность: {format_duration(duration)}\n"
        "\nВыберите теги кнопками или отправьте их вручную."
        "\nПосле выбора нажмите «Готово»."
    )


def transcription_status(ai_enabled: bool, summary_requested: Optional[bool], succeeded: bool) -> str:
    if ai_enabled and summary_requested:
        return "ok" if succeeded else "failed"
    if ai_enabled:
        return "skipped_by_user"
    return "disabled"


class WorkflowOrchestrator:
    def __init__(
        self,
        config: WorkerConfig,
        *,
        state: StateStore,
        gateway: MessagingGateway,
        media: FFmpegMediaTool,
        ai: AIBackend,
        reminders: Optional[ReminderScheduler] = None,
        conversation: Optional[ConversationEngine] = None,
        delivery: Optional[DeliveryRetrier] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.state = state
        self.gateway = gateway
        self.media = media
        self.ai = ai
        self.clock = clock
        self.sleep = sleep
        self.reminders = reminders or ReminderScheduler(
            base_seconds=config.reminder_base_seconds,
            max_seconds=config.reminder_max_seconds,
            timezone=config.reminder_timezone,
            night_start_hour=config.reminder_night_start_hour,
            night_end_hour=config.reminder_night_end_hour,
        )
        self.conversation = conversation or ConversationEngine(
            state=state,
            gateway=gateway,
            reminders=self.reminders,
            ai=ai,
            participant_presets=config.participant_presets,
            clock=clock,
        )
        self.delivery = delivery or DeliveryRetrier(
            gateway=gateway,
            media=media,
            temp_dir=config.temp_dir,
            upload_max_bytes=config.telegram_upload_max_bytes,
        )
        self._last_scan_at: Optional[float] = None

    # -- discovery ---------------------------------------------------------

    def destination(self) -> Optional[str]:
        return self.config.telegram_chat_id or self.state.destination

    def maybe_start_next(self, now: Optional[float] = None) -> bool:
        """Offer the next stable, unprocessed recording. Returns True when one was started."""
        now = self.clock() if now is None else now
        if self.state.get_pending() is not None:
            return False
        destination = self.destination()
        if not destination:
            logger.info("Destination not known yet. Send any message to the bot or set TELEGRAM_CHAT_ID.")
            return False
        if self.state.destination is None:
            self.state.set_destination(destination)
            self.state.save()

        root = self.config.recordings_dir
        for path in find_recordings(root):
            key = relative_key(root, path)
            if self.state.is_completed(key):
                continue
            if not is_stable(
                path,
                min_age_seconds=self.config.file_min_age_seconds,
                wait_seconds=self.config.stability_wait_seconds,
                sleep=self.sleep,
                clock=self.clock,
            ):
                logger.info("File is still changing or too fresh, will retry later: %s", key)
                continue
            return self._start(path, key, destination, now)
        return False

    def _start(self, path: Path, key: str, destination: str, now: float) -> bool:
        logger.info("Found unprocessed recording: %s", key)
        try:
            duration = self.media.probe_duration(path)
        except MediaToolError as exc:
            logger.warning("Failed to read duration of %s: %s", key, exc)
            return False

        length = min(float(self.config.clip_duration_seconds), duration)
        start = max(0.0, (duration - length) / 2)
        clip = clip_temp_path(self.config.temp_dir, key)
        try:
            self.media.extract_clip(path, clip, start, length)
        except MediaToolError as exc:
            logger.warning("Failed to build preview clip for %s: %s", key, exc)
            clip.unlink(missing_ok=True)
            return False

        recorded_at = detect_recording_datetime(path)
        date = recorded_at.strftime("%Y-%m-%d")
        caption = preview_caption(date, recorded_at.strftime("%H:%M:%S"), duration)
        try:
            message_id = self.gateway.send_media(destination, clip, caption, build_tags_keyboard([]))
        except MessagingError as exc:
            logger.warning("Failed to send preview clip for %s: %s", key, exc)
            return False
        finally:
            clip.unlink(missing_ok=True)

        item = PendingItem(key=key, destination=destination, date=date, tags_prompt_id=message_id)
        self.reminders.schedule_first(item, now)
        self.state.set_pending(item)
        self.state.save()
        logger.info("Waiting for tags for %s", key)
        return True

    # -- finalize ----------------------------------------------------------

    def maybe_finalize(self, now: Optional[float] = None) -> bool:
        """Deliver and record the pending item once the conversation is done.

        Returns True when the pending slot was released (completed,
        already completed, or abandoned because the source vanished).
        """
        now = self.clock() if now is None else now
        item = self.state.get_pending()
        if item is None or item.stage != Stage.READY_TO_FINALIZE:
            return False

        if self.state.is_completed(item.key):
            logger.info("Pending item %s is already completed, clearing it", item.key)
            self.state.clear_pending()
            self.state.save()
            return True

        if not (item.tags or item.tags_skipped) or not item.participants_finalized:
            logger.debug("Pending item %s is not ready yet", item.key)
            return False
        if item.next_retry_at is not None and now < item.next_retry_at:
            return False

        path = resolve_key(self.config.recordings_dir, item.key)
        if path is None or not path.is_file():
            logger.warning("Source file for %s is gone, abandoning it", item.key)
            self.state.clear_pending()
            self.state.save()
            self._notify(item.destination, f"Не нашел исходный файл: {item.key}")
            return True

        if not item.delivered:
            caption = build_final_caption(item.tags, item.participants, item.date)
            if not self._deliver_full(item, path, caption):
                item.next_retry_at = now + DELIVERY_RETRY_SECONDS
                send_notice = not item.retry_notice_sent
                item.retry_notice_sent = True
                self._save(item)
                if send_notice:
                    self._notify(item.destination, DELIVERY_FAILED_NOTICE)
                logger.info("Full delivery of %s failed, retrying in %ss", item.key, DELIVERY_RETRY_SECONDS)
                return False
            item.delivered = True
            item.next_retry_at = None
            item.retry_notice_sent = False
            item.parts_notice_sent = False
            self._save(item)

        record = self._complete(item, path)
        self.state.mark_completed(record)
        self.state.clear_pending()
        self.state.save()

        self._notify(item.destination, f"Сохранено и отправлено: {path.name}")
        logger.info("Processed and sent full recording: %s", item.key)
        return True

    def _deliver_full(self, item: PendingItem, path: Path, caption: str) -> bool:
        try:
            self.gateway.send_media(item.destination, path, caption)
            return True
        except PayloadTooLargeError:
            return self._deliver_in_parts(item, path, caption)
        except MessagingError as exc:
            logger.warning("Sending %s as video failed, trying as document: %s", item.key, exc)

        try:
            self.gateway.send_file(item.destination, path, caption, "video/mp4")
            return True
        except PayloadTooLargeError:
            return self._deliver_in_parts(item, path, caption)
        except MessagingError as exc:
            logger.warning("Sending %s as document failed: %s", item.key, exc)
            return False

    def _deliver_in_parts(self, item: PendingItem, path: Path, caption: str) -> bool:
        # Both split notices go out once per failure episode.
        announce = not item.parts_notice_sent
        if announce:
            try:
                size = format_file_size(path.stat().st_size)
            except OSError:
                size = "?"
            self._notify(
                item.destination,
                f"Полный файл слишком большой для отправки одним сообщением ({size}). Пробую отправить частями.",
            )
            item.parts_notice_sent = True
            self._save(item)
        return self.delivery.deliver(item.destination, path, caption, item.key, announce=announce)

    def _complete(self, item: PendingItem, path: Path) -> CompletedItem:
        ai_enabled = self.ai.is_enabled()
        transcript: Optional[str] = None
        summary: Optional[str] = None

        if ai_enabled and item.summary_requested:
            logger.info("Starting transcription and summary for %s", item.key)
            try:
                result = self.ai.transcribe_and_summarize(path)
            except AIBackendError as exc:
                logger.warning("Transcription/summary for %s failed: %s", item.key, exc)
                self._notify(item.destination, AI_FAILED_NOTICE)
            else:
                transcript, summary = result.transcript, result.summary
                self._notify(item.destination, "саммари:\n" + truncate(summary, SUMMARY_MAX_CHARS))
                if self.config.send_transcript_file and transcript.strip():
                    self._send_transcript(item, path, transcript)

        try:
            stat = path.stat()
            size, mtime = stat.st_size, int(stat.st_mtime)
        except OSError:
            size, mtime = None, None

        return CompletedItem(
            key=item.key,
            processed_at=utc_iso(),
            size=size,
            mtime=mtime,
            tags=tuple(item.tags),
            participants=tuple(item.participants),
            date=item.date,
            summary_requested=bool(item.summary_requested),
            transcription_status=transcription_status(ai_enabled, item.summary_requested, transcript is not None),
            transcript_preview=truncate(transcript, TRANSCRIPT_PREVIEW_CHARS) if transcript is not None else None,
            transcript_chars=len(transcript) if transcript is not None else 0,
            summary=summary,
        )

    def _send_transcript(self, item: PendingItem, path: Path, transcript: str) -> None:
        try:
            transcript_file = write_transcript_file(self.config.temp_dir, item.key, transcript)
        except OSError as exc:
            logger.warning("Cannot write transcript file for %s: %s", item.key, exc)
            return
        try:
            self.gateway.send_file(item.destination, transcript_file, f"Транскрипт: {path.name}", "text/plain")
        except MessagingError as exc:
            logger.warning("Transcript file for %s not sent: %s", item.key, exc)
        finally:
            transcript_file.unlink(missing_ok=True)

    # -- reminders ---------------------------------------------------------

    def check_reminders(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        item = self.state.get_pending()
        if item is None:
            return False
        return self.reminders.maybe_nudge(item, now, self.gateway, lambda: self._save(item))

    # -- loop --------------------------------------------------------------

    def tick(self) -> None:
        self.conversation.process_events(self.config.updates_timeout_seconds)
        self.maybe_finalize(self.clock())
        self.check_reminders(self.clock())

        now = self.clock()
        if self._last_scan_at is None or now - self._last_scan_at >= self.config.poll_interval_seconds:
            self._last_scan_at = now
            self.maybe_start_next(now)

    def run_forever(self, *, idle_seconds: float = 1.0) -> None:
        logger.info(
            "Worker started: recordings=%s state=%s ai=%s",
            self.config.recordings_dir,
            self.state.path,
            "on" if self.ai.is_enabled() else "off",
        )
        while True:
            try:
                self.tick()
            except StateWriteError:
                logger.critical("State file cannot be written, stopping worker")
                raise
            except Exception:
                logger.exception("Tick failed, continuing with the next one")
            if self.config.run_once:
                logger.info("RUN_ONCE set, exiting after one tick")
                return
            self.sleep(idle_seconds)

    # -- helpers -----------------------------------------------------------

    def _save(self, item: PendingItem) -> None:
        self.state.set_pending(item)
        self.state.save()

    def _notify(self, destination: str, text: str) -> None:
        try:
            self.gateway.send_text(destination, text)
        except MessagingError as exc:
            logger.warning("Message not sent: %s", exc)


def build_ai_backend(config: WorkerConfig, media: FFmpegMediaTool) -> AIBackend:
    if not config.ai_enabled:
        return DisabledAIBackend()
    from .ai.openai_backend import OpenAIBackend

    return OpenAIBackend(
        api_key=config.openai_api_key,
        temp_dir=config.temp_dir,
        transcribe_model=config.openai_transcribe_model,
        summary_model=config.openai_summary_model,
        language=config.openai_language,
        audio_chunk_seconds=config.openai_audio_chunk_seconds,
        summary_chunk_chars=config.openai_summary_chunk_chars,
        media=media,
    )


def build_worker(config: WorkerConfig) -> WorkflowOrchestrator:
    """Wire the production collaborators for ``config``."""
    config.temp_dir.mkdir(parents=True, exist_ok=True)
    media = FFmpegMediaTool()
    return WorkflowOrchestrator(
        config,
        state=StateStore(config.state_file),
        gateway=TelegramGateway(config.telegram_token),
        media=media,
        ai=build_ai_backend(config, media),
    )
