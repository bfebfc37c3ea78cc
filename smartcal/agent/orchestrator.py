from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..config import DEFAULT_EVENT_DURATION_MINUTES, ENABLE_LLM, MATCH_LOOKBACK_DAYS
from ..models import CalendarEvent
from ..recurrence import convert_timezone, occurrence_date
from ..state import (
    EventNotFoundError,
    EventStore,
    StoreError,
    VersionConflictError,
    default_list_window,
    event_store,
    new_event_id,
)
from ..utils import _log_debug, day_bounds
from . import response_agent
from .conflict_manager import ConflictDetector
from .intent_router import IntentClassifier, query_kind
from .llm_provider import run_function_call_completion
from .normalizer import (
    coerce_local_datetime,
    detect_recurrence,
    now_in_timezone,
    resolve_event_date,
    resolve_timezone,
)
from .resolve_event_target import EventMatcher, filter_by_title
from .schemas import (
    CommandResponse,
    ConfirmationContext,
    CreateEventArguments,
    EventDraft,
    LLMReply,
    ParsedIntent,
)
from .slot_extractor import (
    build_event_draft,
    build_update_patch,
    clean_create_title,
    extract_category,
    extract_entities,
    split_update_message,
)
from .state import ConfirmationStateMachine

logger = logging.getLogger(__name__)

LLMCall = Callable[..., Awaitable[Tuple[Optional[LLMReply], Dict[str, Any]]]]

# Titles that name the calendar itself rather than an event
_GENERIC_QUERY_TITLES = {"安排", "日程", "事件", "日历", "计划", "所有事件", "全部事件", "所有安排",
                         "全部安排", "所有日程", "全部日程"}


def _store_error_detail(exc: Exception) -> str:
  if isinstance(exc, VersionConflictError):
    return "事件已被其他操作修改，请重新查询后再试。"
  if isinstance(exc, EventNotFoundError):
    return "事件不存在或已被删除。"
  if isinstance(exc, ValidationError):
    return "事件数据无效：" + "; ".join(err.get("msg", "") for err in exc.errors())
  return str(exc) or "存储失败，请稍后重试。"


class CommandOrchestrator:
  """Runs one free-text command through classify -> match/draft -> confirm -> mutate."""

  def __init__(self,
               store: EventStore,
               confirmations: Optional[ConfirmationStateMachine] = None,
               classifier: Optional[IntentClassifier] = None,
               matcher: Optional[EventMatcher] = None,
               detector: Optional[ConflictDetector] = None,
               llm_enabled: bool = ENABLE_LLM,
               now_fn: Optional[Callable[[str], datetime]] = None,
               llm_call: Optional[LLMCall] = None):
    self.store = store
    self.confirmations = confirmations or ConfirmationStateMachine()
    self.classifier = classifier or IntentClassifier()
    self.matcher = matcher or EventMatcher()
    self.detector = detector or ConflictDetector()
    self.llm_enabled = llm_enabled
    self.now_fn = now_fn or now_in_timezone
    self.llm_call = llm_call or run_function_call_completion

  async def handle_command(self,
                           message: str,
                           session_id: str = "default",
                           timezone: Optional[str] = None,
                           cancel_event: Optional[asyncio.Event] = None) -> CommandResponse:
    tz = resolve_timezone(timezone)
    now = self.now_fn(tz)
    context = self.confirmations.get(session_id)
    intent = self.classifier.identify(message, context)

    if context is not None and intent.type not in ("confirm", "cancel"):
      _log_debug(f"[AGENT] dropping stale {context.pending_action} confirmation session={session_id}")
      self.confirmations.clear(session_id)
      context = None

    try:
      if intent.type == "confirm":
        return await self._handle_confirm(session_id, context, tz)
      if intent.type == "cancel":
        return self._handle_cancel(session_id, context)
      if intent.type == "delete":
        return self._handle_delete(session_id, intent, now, tz)
      if intent.type == "update":
        return self._handle_update(session_id, intent, now, tz)
      if intent.type == "create":
        return await self._handle_create(session_id, message, intent, now, tz, cancel_event)
      if intent.type == "query":
        return self._handle_query(intent, now, tz)
      return response_agent.help_message()
    except (StoreError, ValidationError) as exc:
      logger.warning("command failed session=%s intent=%s: %s", session_id, intent.type, exc)
      return response_agent.operation_failed(_store_error_detail(exc), intent.type)

  def clear_confirmation(self, session_id: str) -> bool:
    return self.confirmations.clear(session_id) is not None

  # -------------------------
  # helpers
  # -------------------------
  def _window_events(self, now: datetime, tz: str) -> List[CalendarEvent]:
    range_start, range_end = default_list_window(now.date())
    return self.store.list(range_start, range_end, tz)

  def _range_events(self, first_day: date, last_day: date, tz: str) -> List[CalendarEvent]:
    # inclusive of both days, exclusive of the following midnight
    return self.store.list(day_bounds(first_day)[0],
                           day_bounds(last_day)[1] - timedelta(seconds=1), tz)

  def _day_events(self, day: date, tz: str) -> List[CalendarEvent]:
    return self._range_events(day, day, tz)

  def _begin(self, session_id: str, action: str, intent: ParsedIntent, **fields: Any) -> None:
    self.confirmations.begin(session_id, ConfirmationContext(
        pending_action=action,
        original_message=intent.original_message,
        timestamp=0.0,
        confidence=intent.confidence,
        **fields,
    ))

  # -------------------------
  # confirm / cancel
  # -------------------------
  async def _handle_confirm(self,
                            session_id: str,
                            context: Optional[ConfirmationContext],
                            tz: str) -> CommandResponse:
    if context is None:
      return response_agent.no_pending_confirmation()
    self.confirmations.clear(session_id)

    if context.pending_action == "delete":
      return await self._confirm_delete(context)
    if context.pending_action == "update":
      return await self._confirm_update(context, tz)
    return await self._confirm_create(context, tz)

  def _handle_cancel(self, session_id: str, context: Optional[ConfirmationContext]) -> CommandResponse:
    if context is None:
      return response_agent.nothing_to_cancel()
    self.confirmations.clear(session_id)
    return response_agent.cancelled(context)

  async def _remove_target(self, target: CalendarEvent) -> None:
    if target.is_occurrence:
      base = self.store.get_by_id(target.base_id)
      if base is None:
        raise EventNotFoundError(target.base_id)
      await self.store.add_exception(base.id, occurrence_date(target, base))
      return
    await self.store.delete(target.id, expected_version=target.version)

  async def _confirm_delete(self, context: ConfirmationContext) -> CommandResponse:
    deleted: List[CalendarEvent] = []
    failures: List[str] = []
    for target in context.target_events:
      try:
        await self._remove_target(target)
      except StoreError as exc:
        logger.warning("delete of %s failed: %s", target.id, exc)
        failures.append(f"{target.title}（{_store_error_detail(exc)}）")
        continue
      deleted.append(target)

    if not deleted:
      return response_agent.delete_failed("\n".join(failures) if failures else None)
    return response_agent.delete_succeeded(deleted, failures)

  async def _confirm_update(self, context: ConfirmationContext, tz: str) -> CommandResponse:
    target = context.target_events[0]
    patch = dict(context.patch or {})
    new_start = patch.get("start", target.start)
    new_end = patch.get("end", target.end)

    if "start" in patch and not target.all_day:
      info = self.detector.check_conflict(
          new_start, new_end, self._day_events(new_start.date(), tz), exclude_id=target.id)
      if info.has_conflict:
        return response_agent.update_conflict(target, info)

    if target.is_occurrence:
      # Editing one occurrence detaches it from its series
      base = self.store.get_by_id(target.base_id)
      if base is None:
        raise EventNotFoundError(target.base_id)
      await self.store.add_exception(base.id, occurrence_date(target, base))
      detached = target.model_copy(update={
          **patch,
          "id": new_event_id(),
          "recurrence": None,
          "original_event": None,
      })
      updated = await self.store.create(CalendarEvent.model_validate(detached.model_dump()))
    else:
      stored = self.store.get_by_id(target.id)
      if stored is None:
        raise EventNotFoundError(target.id)
      # The patch holds wall-clock times in the request zone
      for key in ("start", "end"):
        if key in patch:
          patch[key] = convert_timezone(patch[key], target.timezone, stored.timezone)
      updated = await self.store.update(target.id, patch, expected_version=target.version)
      if updated.timezone != target.timezone:
        updated = updated.model_copy(update={
            "start": convert_timezone(updated.start, updated.timezone, target.timezone),
            "end": convert_timezone(updated.end, updated.timezone, target.timezone),
            "timezone": target.timezone,
        })
    return response_agent.update_succeeded(target, updated)

  async def _confirm_create(self, context: ConfirmationContext, tz: str) -> CommandResponse:
    if context.draft is None or not context.suggestions:
      return response_agent.no_pending_confirmation()
    slot = context.suggestions[0]
    draft = context.draft.model_copy(update={"start": slot.start, "end": slot.end})
    stored = await self.store.create(self._event_from_draft(draft, tz))
    return response_agent.event_created(stored, intent_type="confirm")

  # -------------------------
  # delete / update
  # -------------------------
  def _handle_delete(self,
                     session_id: str,
                     intent: ParsedIntent,
                     now: datetime,
                     tz: str) -> CommandResponse:
    result = self.matcher.resolve(intent, self._window_events(now, tz), now.date())
    if result.status == "none":
      return response_agent.no_match(intent)
    if result.status == "too_many":
      return response_agent.too_many_matches(result.events, "delete")
    if result.status == "single":
      self._begin(session_id, "delete", intent, target_events=result.events)
      return response_agent.single_delete_confirmation(result.events[0])
    if result.status == "batch":
      self._begin(session_id, "delete", intent, target_events=result.events)
      return response_agent.candidate_list(result.events, "delete", batch=True)
    return response_agent.candidate_list(result.events, "delete", batch=False)

  def _handle_update(self,
                     session_id: str,
                     intent: ParsedIntent,
                     now: datetime,
                     tz: str) -> CommandResponse:
    target_text, change_text = split_update_message(intent.original_message)
    entities = extract_entities(target_text)
    if not (entities.event_title or entities.date or entities.time):
      entities = intent.entities
    target_intent = intent.model_copy(update={
        "entities": entities,
        "original_message": target_text or intent.original_message,
    })

    result = self.matcher.resolve(target_intent, self._window_events(now, tz), now.date(),
                                  allow_batch=False)
    if result.status == "none":
      return response_agent.no_match(target_intent)
    if result.status == "too_many":
      return response_agent.too_many_matches(result.events, "update")
    if result.status != "single":
      return response_agent.candidate_list(result.events, "update", batch=False)

    target = result.events[0]
    patch = build_update_patch(change_text, target.start, target.end, now)
    if not patch:
      return response_agent.update_missing_change(target)
    self._begin(session_id, "update", intent, target_events=[target], patch=patch)
    return response_agent.update_confirmation(target, patch)

  # -------------------------
  # create
  # -------------------------
  def _draft_from_llm(self,
                      arguments: CreateEventArguments,
                      message: str,
                      tz: str) -> Optional[EventDraft]:
    start = coerce_local_datetime(arguments.start_time, tz)
    end = coerce_local_datetime(arguments.end_time, tz)
    if start is None:
      return None
    if end is None or end <= start:
      end = start + timedelta(minutes=DEFAULT_EVENT_DURATION_MINUTES)
    try:
      return EventDraft(
          title=arguments.title.strip(),
          start=start,
          end=end,
          location=arguments.location,
          description=arguments.description,
          category=arguments.category or extract_category(message),
          priority=arguments.priority or "medium",
          recurrence=detect_recurrence(message, start.date()),
          source="llm",
      )
    except ValidationError:
      return None

  async def _llm_draft(self,
                       message: str,
                       now: datetime,
                       tz: str,
                       cancel_event: Optional[asyncio.Event]) -> Optional[EventDraft]:
    if not self.llm_enabled:
      return None
    reply, meta = await self.llm_call(
        message=message,
        now_iso=now.isoformat(timespec="minutes"),
        timezone=tz,
        cancel_event=cancel_event,
    )
    if meta.get("llm_error"):
      logger.warning("llm create failed: %s", meta.get("llm_error"))
    if reply is None or reply.arguments is None:
      _log_debug(f"[AGENT] llm produced no function call, using rules meta={meta}")
      return None
    return self._draft_from_llm(reply.arguments, message, tz)

  def _event_from_draft(self, draft: EventDraft, tz: str) -> CalendarEvent:
    return CalendarEvent(
        id=new_event_id(),
        title=draft.title,
        description=draft.description,
        start=draft.start,
        end=draft.end,
        all_day=draft.all_day,
        location=draft.location,
        category=draft.category,
        priority=draft.priority,
        timezone=tz,
        recurrence=draft.recurrence,
    )

  async def _handle_create(self,
                           session_id: str,
                           raw_message: str,
                           intent: ParsedIntent,
                           now: datetime,
                           tz: str,
                           cancel_event: Optional[asyncio.Event]) -> CommandResponse:
    draft = await self._llm_draft(raw_message, now, tz, cancel_event)
    if draft is None:
      draft = build_event_draft(intent.entities, intent.original_message, now)
    if draft is None:
      return response_agent.missing_create_info()
    _log_debug(f"[AGENT] create draft source={draft.source} title={draft.title} "
               f"start={draft.start.isoformat()} end={draft.end.isoformat()}")

    if not draft.all_day:
      info = self.detector.check_conflict(draft.start, draft.end,
                                          self._day_events(draft.start.date(), tz))
      if info.has_conflict:
        if info.suggestions:
          self._begin(session_id, "create", intent,
                      target_events=info.conflicting_events,
                      draft=draft,
                      suggestions=info.suggestions)
        return response_agent.create_conflict(draft, info)

    stored = await self.store.create(self._event_from_draft(draft, tz))
    return response_agent.event_created(stored)

  # -------------------------
  # query
  # -------------------------
  def _query_range(self, intent: ParsedIntent, today: date) -> Optional[Tuple[date, date]]:
    message = intent.original_message
    date_text = intent.entities.date
    resolved = resolve_event_date(date_text, message, today)
    if resolved is not None:
      return resolved, resolved
    monday = today - timedelta(days=today.weekday())
    if date_text in ("本周", "这周"):
      return monday, monday + timedelta(days=6)
    if date_text == "下周":
      return monday + timedelta(days=7), monday + timedelta(days=13)
    if date_text == "上周":
      return monday - timedelta(days=7), monday - timedelta(days=1)
    return None

  def _handle_query(self, intent: ParsedIntent, now: datetime, tz: str) -> CommandResponse:
    today = now.date()
    kind = query_kind(intent.original_message)

    if kind == "free_slots":
      day_range = self._query_range(intent, today)
      day = day_range[0] if day_range else today
      slots = self.detector.find_available_slots(
          day, DEFAULT_EVENT_DURATION_MINUTES, self._day_events(day, tz))
      label = "今日" if day == today else day.strftime("%m/%d")
      return response_agent.free_slots(slots, label)

    if kind == "analysis":
      start, end = self._query_range(intent, today) or (
          today - timedelta(days=today.weekday()),
          today - timedelta(days=today.weekday()) + timedelta(days=6))
      events = self._range_events(start, end, tz)
      return response_agent.analysis_report(self.detector.analyze_busy_times(events))

    day_range = self._query_range(intent, today)
    if day_range is not None:
      events = self._range_events(day_range[0], day_range[1], tz)
      return response_agent.event_list(events)

    title = clean_create_title(intent.entities.event_title)
    if title and title not in _GENERIC_QUERY_TITLES:
      return response_agent.event_list(filter_by_title(self._window_events(now, tz), title))

    if "所有" in intent.original_message or "全部" in intent.original_message:
      start = day_bounds(today)[0]
      events = self.store.list(start, start + timedelta(days=MATCH_LOOKBACK_DAYS), tz)
      return response_agent.event_list(events)
    return response_agent.event_list(self._day_events(today, tz))


orchestrator = CommandOrchestrator(event_store)
