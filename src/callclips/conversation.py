"""Stage machine for the tagging conversation around the pending recording.

Stages run ``awaiting_tags -> awaiting_participants -> awaiting_summary_choice
-> ready_to_finalize``. The summary question is skipped when the AI backend
is off or the question could not be delivered. ``Back`` and ``Restart`` are
accepted in every stage except ``ready_to_finalize``.

Every mutation of the pending item is saved before the next message goes
out, so a crash never replays an already-sent prompt.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from .ai import AIBackend
from .keyboards import build_participants_keyboard, build_summary_keyboard, build_tags_keyboard
from .messaging import (
    ButtonPress,
    InboundEvent,
    Keyboard,
    MessagingError,
    MessagingGateway,
    RateLimitedError,
    TextMessage,
)
from .parsing import (
    Action,
    Back,
    ParticipantsDone,
    ParticipantsSkip,
    Restart,
    SummaryChoice,
    TagsDone,
    TagsSkip,
    ToggleParticipant,
    ToggleTag,
    is_participants_skip,
    is_tags_skip,
    parse_navigation,
    parse_participants,
    parse_payload,
    parse_tags,
    parse_yes_no,
)
from .reminders import ReminderScheduler
from .state import PendingItem, Stage, StateStore
from .text import format_tags

logger = logging.getLogger(__name__)

TOGGLE_DEBOUNCE_SECONDS = 1.2

SUMMARY_QUESTION = "Нужно сделать саммари по созвону?"
STALE_BUTTON = "Эта кнопка уже неактуальна"
TAGS_UNPARSED = (
    "Не удалось распознать теги. Отправьте, например: #мок #резюме, "
    "выберите кнопками или отправьте \"-\" для пропуска."
)
PARTICIPANTS_UNPARSED = (
    "Не удалось распознать ники. Пришлите в формате: @user1 @user2, "
    "выберите кнопками или отправьте \"-\" для пропуска."
)
CHOICE_UNPARSED = "Ответьте \"да\" или \"нет\" (или используйте кнопки)."
TAGS_REQUIRED = "Выберите хотя бы один тег или нажмите «Без тега»"
ALREADY_FIRST_STEP = "Это первый шаг: выберите теги кнопками или пришлите их текстом."


def participants_prompt_text(header: str, has_presets: bool) -> str:
    if has_presets:
        return (
            f"{header}\nВыберите участников кнопками ниже или пришлите вручную "
            "(например: @msavin_dev @asdfasdf).\nЕсли не хотите указывать, отправьте: -"
        )
    return (
        f"{header}\nПришлите участников (ники), например: @msavin_dev @asdfasdf"
        "\nЕсли не хотите указывать, отправьте: -"
    )


class ConversationEngine:
    def __init__(
        self,
        *,
        state: StateStore,
        gateway: MessagingGateway,
        reminders: ReminderScheduler,
        ai: AIBackend,
        participant_presets: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
        debounce_seconds: float = TOGGLE_DEBOUNCE_SECONDS,
    ) -> None:
        self.state = state
        self.gateway = gateway
        self.reminders = reminders
        self.ai = ai
        self.participant_presets = tuple(participant_presets)
        self.clock = clock
        self.debounce_seconds = debounce_seconds

    # -- event intake -------------------------------------------------------

    def process_events(self, timeout: int) -> int:
        """Pull one batch of inbound events and apply them. Returns the batch size."""
        try:
            events = self.gateway.poll_events(self.state.watermark, timeout)
        except MessagingError as exc:
            logger.warning("Polling for updates failed: %s", exc)
            return 0

        for event in events:
            self.state.advance_watermark(event.event_id)
            if event.destination and self.state.destination is None:
                logger.info("Learned conversation destination %s from updates", event.destination)
                self.state.set_destination(event.destination)
            self.state.save()
            self.handle_event(event)
        return len(events)

    def handle_event(self, event: InboundEvent) -> None:
        item = self.state.get_pending()
        if isinstance(event, ButtonPress):
            self._handle_button(event, item)
        elif isinstance(event, TextMessage):
            self._handle_text(event, item)

    def _handle_button(self, event: ButtonPress, item: Optional[PendingItem]) -> None:
        if item is None or event.destination != item.destination:
            self.gateway.acknowledge(event.callback_id)
            return

        prompt_id = item.prompt_id_for_stage()
        if prompt_id is None or event.message_id != prompt_id:
            logger.debug("Ignoring stale button %r on message %s", event.payload, event.message_id)
            self.gateway.acknowledge(event.callback_id, STALE_BUTTON)
            return

        action = parse_payload(event.payload)
        if action is None:
            logger.debug("Ignoring unknown button payload %r", event.payload)
            self.gateway.acknowledge(event.callback_id)
            return

        toast = self.apply_action(item, action)
        self.gateway.acknowledge(event.callback_id, toast or "")

    def _handle_text(self, event: TextMessage, item: Optional[PendingItem]) -> None:
        if item is None or event.destination != item.destination:
            return
        text = event.text.strip()
        if not text:
            return
        if item.stage == Stage.READY_TO_FINALIZE:
            return

        prompt_id = item.prompt_id_for_stage()
        if prompt_id is not None and event.message_id <= prompt_id:
            logger.debug("Ignoring message %s sent before prompt %s", event.message_id, prompt_id)
            return

        nav = parse_navigation(text)
        if nav is not None:
            self.apply_action(item, nav)
            return

        if item.stage == Stage.AWAITING_TAGS:
            self._tags_from_text(item, text)
        elif item.stage == Stage.AWAITING_PARTICIPANTS:
            self._participants_from_text(item, text)
        elif item.stage == Stage.AWAITING_SUMMARY_CHOICE:
            self._choice_from_text(item, text)

    # -- actions ---------------------------------------------------------------

    def apply_action(self, item: PendingItem, action: Action) -> Optional[str]:
        """Apply one decoded action; returns an optional short toast for the button ack."""
        if item.stage == Stage.READY_TO_FINALIZE:
            return None

        if isinstance(action, Restart):
            self._restart(item)
            return "Начинаем сначала"
        if isinstance(action, Back):
            return self._back(item)

        if item.stage == Stage.AWAITING_TAGS:
            if isinstance(action, ToggleTag):
                return self._toggle_tag(item, action.tag)
            if isinstance(action, TagsDone):
                if not (item.tags or item.tags_skipped):
                    self._touch(item)
                    return TAGS_REQUIRED
                self._enter_participants(item, f"Теги: {format_tags(item.tags)}")
                return "Теги сохранены"
            if isinstance(action, TagsSkip):
                item.tags = []
                item.tags_skipped = True
                self._enter_participants(item, f"Теги: {format_tags(item.tags)}")
                return "Без тегов"
        elif item.stage == Stage.AWAITING_PARTICIPANTS:
            if isinstance(action, ToggleParticipant):
                return self._toggle_participant(item, action.handle)
            if isinstance(action, ParticipantsDone):
                self._finalize_participants(item, item.participants)
                return "Участники сохранены"
            if isinstance(action, ParticipantsSkip):
                self._finalize_participants(item, [])
                return "Без участников"
        elif item.stage == Stage.AWAITING_SUMMARY_CHOICE:
            if isinstance(action, SummaryChoice):
                self._set_summary_choice(item, action.value)
                return "Принято"
        return None

    # -- text handlers ---------------------------------------------------------

    def _tags_from_text(self, item: PendingItem, text: str) -> None:
        if is_tags_skip(text):
            item.tags = []
            item.tags_skipped = True
            self._enter_participants(item, f"Теги сохранены: {format_tags(item.tags)}")
            return
        tags = parse_tags(text)
        if not tags:
            self._reject(item, TAGS_UNPARSED)
            return
        item.tags = tags
        item.tags_skipped = False
        self._enter_participants(item, f"Теги сохранены: {format_tags(item.tags)}")

    def _participants_from_text(self, item: PendingItem, text: str) -> None:
        if is_participants_skip(text):
            self._finalize_participants(item, [])
            return
        participants = parse_participants(text)
        if not participants:
            self._reject(item, PARTICIPANTS_UNPARSED)
            return
        self._finalize_participants(item, participants)

    def _choice_from_text(self, item: PendingItem, text: str) -> None:
        choice = parse_yes_no(text)
        if choice is None:
            self._reject(item, CHOICE_UNPARSED)
            return
        self._set_summary_choice(item, choice)

    # -- toggles ---------------------------------------------------------------

    def _is_rapid_duplicate(self, item: PendingItem, action: str, now: float) -> bool:
        if not item.last_toggle_action or item.last_toggle_at is None:
            return False
        delta = now - item.last_toggle_at
        return item.last_toggle_action == action and 0 <= delta < self.debounce_seconds

    def _toggle_tag(self, item: PendingItem, tag: str) -> Optional[str]:
        now = self.clock()
        fingerprint = f"tag:{tag}"
        if self._is_rapid_duplicate(item, fingerprint, now):
            return None
        selected = set(item.tags)
        added = tag not in selected
        if added:
            selected.add(tag)
        else:
            selected.discard(tag)
        item.tags = sorted(selected)
        item.tags_skipped = False
        item.last_toggle_action = fingerprint
        item.last_toggle_at = now
        self.reminders.schedule_first(item, now)
        self._save(item)
        self._refresh_markup(item, item.tags_prompt_id, build_tags_keyboard(item.tags), now)
        return f"Добавлено: #{tag}" if added else f"Удалено: #{tag}"

    def _toggle_participant(self, item: PendingItem, handle: str) -> Optional[str]:
        now = self.clock()
        fingerprint = f"participant:{handle}"
        if self._is_rapid_duplicate(item, fingerprint, now):
            return None
        selected = set(item.participants)
        added = handle not in selected
        if added:
            selected.add(handle)
        else:
            selected.discard(handle)
        item.participants = sorted(selected)
        item.participants_finalized = False
        item.last_toggle_action = fingerprint
        item.last_toggle_at = now
        self.reminders.schedule_first(item, now)
        self._save(item)
        keyboard = build_participants_keyboard(self.participant_presets, item.participants)
        self._refresh_markup(item, item.participants_prompt_id, keyboard, now)
        return f"Добавлено: {handle}" if added else f"Удалено: {handle}"

    def _refresh_markup(self, item: PendingItem, message_id: Optional[int], keyboard: Keyboard, now: float) -> None:
        if message_id is None:
            return
        if item.markup_retry_at is not None and now < item.markup_retry_at:
            logger.debug("Keyboard refresh for %s deferred until %.0f", item.key, item.markup_retry_at)
            return
        try:
            self.gateway.edit_keyboard(item.destination, message_id, keyboard)
        except RateLimitedError as exc:
            item.markup_retry_at = now + exc.retry_after
            logger.warning(
                "Rate limited while updating keyboard, deferring refresh (retry_after=%ss)", exc.retry_after
            )
            self._save(item)
            return
        except MessagingError as exc:
            logger.warning("Keyboard refresh for %s failed: %s", item.key, exc)
            return
        if item.markup_retry_at is not None:
            item.markup_retry_at = None
            self._save(item)

    # -- stage transitions -------------------------------------------------------

    def _clear_transient(self, item: PendingItem) -> None:
        item.last_toggle_action = None
        item.last_toggle_at = None
        item.markup_retry_at = None

    def _enter_participants(self, item: PendingItem, header: str) -> None:
        now = self.clock()
        item.stage = Stage.AWAITING_PARTICIPANTS
        item.participants_finalized = False
        item.summary_requested = None
        item.participants_prompt_id = None
        item.summary_prompt_id = None
        item.next_retry_at = None
        item.retry_notice_sent = False
        item.parts_notice_sent = False
        self._clear_transient(item)
        self.reminders.rearm(item, now)
        self._save(item)

        text = participants_prompt_text(header, bool(self.participant_presets))
        keyboard = build_participants_keyboard(self.participant_presets, item.participants)
        message_id = self._send(item, text, keyboard)
        if message_id is not None:
            item.participants_prompt_id = message_id
            self._save(item)

    def _finalize_participants(self, item: PendingItem, participants: list[str]) -> None:
        now = self.clock()
        item.participants = sorted(set(participants))
        item.participants_finalized = True
        item.next_retry_at = None
        item.retry_notice_sent = False
        item.parts_notice_sent = False
        self._clear_transient(item)

        if not self.ai.is_enabled():
            self._ready(item, summary_requested=False)
            return

        item.stage = Stage.AWAITING_SUMMARY_CHOICE
        item.summary_requested = None
        item.summary_prompt_id = None
        self.reminders.rearm(item, now)
        self._save(item)

        message_id = self._send(item, SUMMARY_QUESTION, build_summary_keyboard())
        if message_id is None:
            logger.info("Summary question not delivered for %s, continuing without summary", item.key)
            self._ready(item, summary_requested=False)
            return
        item.summary_prompt_id = message_id
        self._save(item)

    def _set_summary_choice(self, item: PendingItem, choice: bool) -> None:
        self._ready(item, summary_requested=choice)

    def _ready(self, item: PendingItem, *, summary_requested: bool) -> None:
        item.summary_requested = summary_requested
        item.stage = Stage.READY_TO_FINALIZE
        self._clear_transient(item)
        self.reminders.clear(item)
        self._save(item)
        logger.info("Pending item %s is ready to finalize (summary=%s)", item.key, summary_requested)

    def _enter_tags(self, item: PendingItem, header: str) -> None:
        now = self.clock()
        item.stage = Stage.AWAITING_TAGS
        item.participants_finalized = False
        item.summary_requested = None
        item.tags_prompt_id = None
        item.participants_prompt_id = None
        item.summary_prompt_id = None
        item.next_retry_at = None
        item.retry_notice_sent = False
        item.parts_notice_sent = False
        self._clear_transient(item)
        self.reminders.rearm(item, now)
        self._save(item)

        text = f"{header}\nВыберите теги кнопками или отправьте их вручную.\nПосле выбора нажмите «Готово»."
        message_id = self._send(item, text, build_tags_keyboard(item.tags))
        if message_id is not None:
            item.tags_prompt_id = message_id
            self._save(item)

    def _restart(self, item: PendingItem) -> None:
        item.tags = []
        item.tags_skipped = False
        item.participants = []
        self._enter_tags(item, "Начинаем сначала.")

    def _back(self, item: PendingItem) -> Optional[str]:
        if item.stage == Stage.AWAITING_SUMMARY_CHOICE:
            self._enter_participants(item, "Вернулись к выбору участников.")
            return "Назад"
        if item.stage == Stage.AWAITING_PARTICIPANTS:
            self._enter_tags(item, f"Вернулись к выбору тегов. Сейчас: {format_tags(item.tags)}")
            return "Назад"
        self._reject(item, ALREADY_FIRST_STEP)
        return None

    # -- helpers ---------------------------------------------------------------

    def _touch(self, item: PendingItem) -> None:
        self.reminders.schedule_first(item, self.clock())
        self._save(item)

    def _reject(self, item: PendingItem, text: str) -> None:
        self._touch(item)
        self._send(item, text)

    def _send(self, item: PendingItem, text: str, keyboard: Optional[Keyboard] = None) -> Optional[int]:
        try:
            return self.gateway.send_text(item.destination, text, keyboard)
        except MessagingError as exc:
            logger.warning("Failed to send message for %s: %s", item.key, exc)
            return None

    def _save(self, item: PendingItem) -> None:
        self.state.set_pending(item)
        self.state.save()
