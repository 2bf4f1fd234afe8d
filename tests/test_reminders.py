from datetime import datetime, timezone

from callclips.messaging import MessagingError
from callclips.reminders import ReminderScheduler
from callclips.state import Stage

from conftest import FakeGateway, make_pending


def _ts(hour: int, minute: int = 0) -> float:
    return datetime(2024, 5, 1, hour, minute, tzinfo=timezone.utc).timestamp()


def _night_scheduler() -> ReminderScheduler:
    return ReminderScheduler(base_seconds=300, max_seconds=14400, timezone="UTC", night_start_hour=23, night_end_hour=9)


class TestComputeInterval:
    def test_backoff_is_monotonic_and_capped(self):
        sched = ReminderScheduler(base_seconds=300, max_seconds=14400)
        previous = 0
        for attempt in range(0, 80):
            interval = sched.compute_interval(attempt)
            assert interval >= previous
            assert interval <= 14400
            previous = interval
        assert sched.compute_interval(0) == 300
        assert sched.compute_interval(1) == 600
        assert sched.compute_interval(10) == 14400

    def test_base_is_floored_and_max_at_least_base(self):
        sched = ReminderScheduler(base_seconds=5, max_seconds=10)
        assert sched.base_seconds == 30
        assert sched.max_seconds == 30


class TestQuietHours:
    def test_wrapping_window(self):
        sched = _night_scheduler()
        assert sched.is_quiet_hour(23)
        assert sched.is_quiet_hour(3)
        assert not sched.is_quiet_hour(9)
        assert not sched.is_quiet_hour(12)

    def test_non_wrapping_window(self):
        sched = ReminderScheduler(timezone="UTC", night_start_hour=1, night_end_hour=6)
        assert sched.is_quiet_hour(1)
        assert not sched.is_quiet_hour(6)
        assert not sched.is_quiet_hour(0)

    def test_equal_bounds_disable_window(self):
        sched = ReminderScheduler(timezone="UTC", night_start_hour=5, night_end_hour=5)
        assert not any(sched.is_quiet_hour(h) for h in range(24))

    def test_quiet_hours_end_before_midnight_rolls_to_next_day(self):
        sched = _night_scheduler()
        end = sched.quiet_hours_end(_ts(23, 30))
        assert end == datetime(2024, 5, 2, 9, 0, tzinfo=timezone.utc).timestamp()

    def test_quiet_hours_end_after_midnight_same_day(self):
        sched = _night_scheduler()
        assert sched.quiet_hours_end(_ts(3)) == _ts(9)
        assert sched.quiet_hours_end(_ts(12)) is None

    def test_unknown_timezone_falls_back(self):
        sched = ReminderScheduler(timezone="Not/AZone")
        assert str(sched.zone) == "Europe/Moscow"


class TestMaybeNudge:
    def test_due_reminder_is_sent_and_backs_off(self):
        sched = _night_scheduler()
        gateway = FakeGateway()
        saves = []
        item = make_pending(Stage.AWAITING_TAGS)
        now = _ts(12)
        sched.schedule_first(item, now)

        assert sched.maybe_nudge(item, now + 299, gateway, lambda: saves.append(1)) is False
        assert gateway.sent == []

        assert sched.maybe_nudge(item, now + 300, gateway, lambda: saves.append(1)) is True
        assert item.reminder_attempt == 1
        assert item.last_reminder_at == now + 300
        assert item.next_reminder_at == now + 300 + 600
        assert saves == [1]
        assert "теги" in gateway.texts()[0]

    def test_night_deferral_keeps_attempt_count(self):
        sched = _night_scheduler()
        gateway = FakeGateway()
        item = make_pending(Stage.AWAITING_SUMMARY_CHOICE)
        item.next_reminder_at = _ts(2)
        item.reminder_attempt = 2

        assert sched.maybe_nudge(item, _ts(2, 30), gateway, lambda: None) is False
        assert item.reminder_attempt == 2
        assert item.next_reminder_at == _ts(9)
        assert gateway.sent == []

    def test_unscheduled_item_is_armed_not_nudged(self):
        sched = _night_scheduler()
        gateway = FakeGateway()
        item = make_pending(Stage.AWAITING_PARTICIPANTS)
        assert sched.maybe_nudge(item, _ts(12), gateway, lambda: None) is False
        assert item.next_reminder_at == _ts(12) + 300

    def test_finalized_or_ready_items_need_no_reply(self):
        sched = _night_scheduler()
        gateway = FakeGateway()
        ready = make_pending(Stage.READY_TO_FINALIZE, next_reminder_at=0.0)
        finalized = make_pending(Stage.AWAITING_PARTICIPANTS, participants_finalized=True, next_reminder_at=0.0)
        assert sched.maybe_nudge(ready, _ts(12), gateway, lambda: None) is False
        assert sched.maybe_nudge(finalized, _ts(12), gateway, lambda: None) is False
        assert gateway.sent == []

    def test_send_failure_is_not_fatal_and_schedule_advances(self):
        sched = _night_scheduler()
        gateway = FakeGateway()
        gateway.fail("send_text", MessagingError("down"))
        item = make_pending(Stage.AWAITING_TAGS, next_reminder_at=_ts(12))
        assert sched.maybe_nudge(item, _ts(12), gateway, lambda: None) is False
        assert item.reminder_attempt == 1
        assert item.next_reminder_at == _ts(12) + 600

    def test_rearm_resets_attempts(self):
        sched = _night_scheduler()
        item = make_pending(Stage.AWAITING_TAGS, reminder_attempt=4)
        sched.rearm(item, 1000.0)
        assert item.reminder_attempt == 0
        assert item.next_reminder_at == 1300.0
        item.stage = Stage.READY_TO_FINALIZE
        sched.rearm(item, 1000.0)
        assert item.next_reminder_at is None
