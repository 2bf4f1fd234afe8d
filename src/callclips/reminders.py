"""Reminder scheduling for the pending item.

Reminders back off exponentially from ``base_seconds`` up to
``max_seconds`` and are never sent during the configured night window in
the local timezone; a nudge that falls due at night is moved to the end of
the window instead of being dropped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .messaging import MessagingError, MessagingGateway
from .state import PendingItem, Stage

logger = logging.getLogger(__name__)

MIN_BASE_SECONDS = 30
FALLBACK_TIMEZONE = "Europe/Moscow"

REMINDER_TEXTS = {
    Stage.AWAITING_TAGS: "Напоминание: пришлите теги для созвона (или нажмите кнопки в сообщении с клипом).",
    Stage.AWAITING_PARTICIPANTS: "Напоминание: пришлите участников в формате @user1 @user2 (или '-' для пропуска).",
    Stage.AWAITING_SUMMARY_CHOICE: "Напоминание: нужно ли саммари? Ответьте «да» или «нет» (или нажмите кнопку).",
}
DEFAULT_REMINDER_TEXT = "Напоминание: ожидаю ваш ответ по текущему созвону."


def _load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown reminder timezone %r, using %s", name, FALLBACK_TIMEZONE)
        return ZoneInfo(FALLBACK_TIMEZONE)


class ReminderScheduler:
    def __init__(
        self,
        *,
        base_seconds: int = 300,
        max_seconds: int = 14400,
        timezone: str = FALLBACK_TIMEZONE,
        night_start_hour: int = 23,
        night_end_hour: int = 9,
    ) -> None:
        self.base_seconds = max(MIN_BASE_SECONDS, int(base_seconds))
        self.max_seconds = max(self.base_seconds, int(max_seconds))
        self.zone = _load_zone(timezone)
        self.night_start_hour = max(0, min(23, int(night_start_hour)))
        self.night_end_hour = max(0, min(23, int(night_end_hour)))

    # -- pure schedule maths ----------------------------------------------

    def compute_interval(self, attempt: int) -> int:
        attempt = max(0, int(attempt))
        # Cap the exponent so huge attempt counts never build huge ints.
        if attempt >= 32:
            return self.max_seconds
        return min(self.max_seconds, self.base_seconds * (2 ** attempt))

    def schedule_first(self, item: PendingItem, now: float) -> None:
        item.reminder_attempt = 0
        item.next_reminder_at = now + self.base_seconds
        item.last_reminder_at = None

    def clear(self, item: PendingItem) -> None:
        item.reminder_attempt = 0
        item.next_reminder_at = None
        item.last_reminder_at = None

    def rearm(self, item: PendingItem, now: float) -> None:
        """Reset the schedule if the item still waits on the human, else clear it."""
        if self.needs_reply(item):
            self.schedule_first(item, now)
        else:
            self.clear(item)

    @staticmethod
    def needs_reply(item: PendingItem) -> bool:
        if item.stage in (Stage.AWAITING_TAGS, Stage.AWAITING_SUMMARY_CHOICE):
            return True
        if item.stage == Stage.AWAITING_PARTICIPANTS:
            return not item.participants_finalized
        return False

    def is_quiet_hour(self, hour: int) -> bool:
        start, end = self.night_start_hour, self.night_end_hour
        if start == end:
            return False
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end

    def _local(self, ts: float) -> datetime:
        return datetime.fromtimestamp(ts, tz=self.zone)

    def quiet_hours_end(self, now: float) -> Optional[float]:
        """Return the timestamp the current night window ends, or None if it is daytime."""
        local = self._local(now)
        if not self.is_quiet_hour(local.hour):
            return None
        target = local.replace(hour=self.night_end_hour, minute=0, second=0, microsecond=0)
        if target <= local:
            target = (local + timedelta(days=1)).replace(
                hour=self.night_end_hour, minute=0, second=0, microsecond=0
            )
        return target.timestamp()

    @staticmethod
    def reminder_text(item: PendingItem) -> str:
        return REMINDER_TEXTS.get(item.stage, DEFAULT_REMINDER_TEXT)

    # -- side effects -----------------------------------------------------

    def maybe_nudge(
        self,
        item: PendingItem,
        now: float,
        gateway: MessagingGateway,
        save: Callable[[], None],
    ) -> bool:
        """Advance the reminder schedule for ``item`` and send a due reminder.

        Every schedule change is persisted through ``save`` before the
        reminder text goes out. Returns True when a reminder was sent.
        """
        if not self.needs_reply(item):
            return False
        if item.next_reminder_at is None:
            self.schedule_first(item, now)
            save()
            return False
        if now < item.next_reminder_at:
            return False

        night_end = self.quiet_hours_end(now)
        if night_end is not None:
            item.next_reminder_at = night_end
            save()
            logger.info("Reminder for %s deferred until quiet hours end", item.key)
            return False

        item.reminder_attempt += 1
        item.last_reminder_at = now
        item.next_reminder_at = now + self.compute_interval(item.reminder_attempt)
        save()

        try:
            gateway.send_text(item.destination, self.reminder_text(item))
        except MessagingError as exc:
            logger.warning("Reminder for %s not sent: %s", item.key, exc)
            return False
        return True
