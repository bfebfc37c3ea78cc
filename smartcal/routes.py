from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Literal, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import ValidationError

from .agent.conflict_manager import ConflictDetector
from .agent.normalizer import now_in_timezone, resolve_timezone
from .agent.orchestrator import CommandOrchestrator, orchestrator
from .agent.schemas import CommandResponse
from .agent.slot_extractor import extract_category
from .config import (
    DEFAULT_EVENT_DURATION_MINUTES,
    MATCH_LOOKBACK_DAYS,
    SUPPORTED_TIMEZONES,
)
from .interchange import export_csv, export_ics, import_csv, import_ics
from .models import (
    CalendarEvent,
    CommandRequest,
    ConflictInfo,
    DeleteResult,
    EventCreate,
    EventUpdate,
    IdsPayload,
    ImportResult,
    RecurringExceptionPayload,
    ScheduleAnalysis,
    TimeSlot,
)
from .recurrence import DeleteMode
from .state import (
    EventNotFoundError,
    EventStore,
    StoreError,
    VersionConflictError,
    event_store,
    new_event_id,
)
from .utils import _parse_scope_dates, day_bounds, is_all_day_span, parse_iso_date

logger = logging.getLogger(__name__)

router = APIRouter()

conflict_detector = ConflictDetector()

ExportFormat = Literal["ics", "csv"]


def get_event_store() -> EventStore:
  return event_store


def get_orchestrator() -> CommandOrchestrator:
  return orchestrator


def get_conflict_detector() -> ConflictDetector:
  return conflict_detector


def _raise_store_error(exc: Exception) -> NoReturn:
  if isinstance(exc, EventNotFoundError):
    raise HTTPException(status_code=404, detail="Event not found") from exc
  if isinstance(exc, VersionConflictError):
    raise HTTPException(status_code=409,
                        detail={
                            "message": "Event was modified by another request",
                            "expected_version": exc.expected,
                            "current_version": exc.actual,
                        }) from exc
  if isinstance(exc, ValidationError):
    detail = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    raise HTTPException(status_code=422, detail=detail) from exc
  if isinstance(exc, ValueError):
    raise HTTPException(status_code=422, detail=str(exc)) from exc
  logger.error("event store failure: %s", exc)
  raise HTTPException(status_code=500, detail=f"Event store failure: {exc}") from exc


def _day_range_events(store: EventStore, first_day: date, last_day: date, tz: str) -> List[CalendarEvent]:
  return store.list(day_bounds(first_day)[0], day_bounds(last_day)[1] - timedelta(seconds=1), tz)


def _new_event_from_payload(payload: EventCreate) -> CalendarEvent:
  tz = resolve_timezone(payload.timezone)
  end = payload.end or payload.start + timedelta(minutes=DEFAULT_EVENT_DURATION_MINUTES)
  all_day = payload.all_day
  if all_day is None:
    all_day = is_all_day_span(payload.start, end)
  fields: Dict[str, Any] = {
      "id": new_event_id(),
      "title": payload.title.strip(),
      "description": payload.description,
      "start": payload.start,
      "end": end,
      "all_day": all_day,
      "location": payload.location,
      "category": payload.category or extract_category(payload.title),
      "timezone": tz,
      "recurrence": payload.recurrence,
  }
  if payload.priority:
    fields["priority"] = payload.priority
  return CalendarEvent.model_validate(fields)


# -------------------------
# events
# -------------------------
@router.get("/api/events", response_model=List[CalendarEvent])
def list_events(start_date: Optional[str] = Query(None),
                end_date: Optional[str] = Query(None),
                timezone: Optional[str] = Query(None),
                store: EventStore = Depends(get_event_store)):
  tz = resolve_timezone(timezone)
  scope = _parse_scope_dates(start_date, end_date, label="查询")
  if scope is None:
    today = now_in_timezone(tz).date()
    scope = (today, today + timedelta(days=MATCH_LOOKBACK_DAYS))
  return _day_range_events(store, scope[0], scope[1], tz)


@router.post("/api/events", response_model=CalendarEvent)
async def create_event(payload: EventCreate,
                       allow_conflict: bool = Query(False),
                       store: EventStore = Depends(get_event_store),
                       detector: ConflictDetector = Depends(get_conflict_detector)):
  try:
    event = _new_event_from_payload(payload)
  except ValidationError as exc:
    _raise_store_error(exc)

  if not allow_conflict and not event.all_day:
    existing = _day_range_events(store, event.start.date(), event.end.date(), event.timezone)
    info = detector.check_conflict(event.start, event.end, existing)
    if info.has_conflict:
      raise HTTPException(status_code=409, detail=info.model_dump(mode="json"))

  try:
    return await store.create(event)
  except StoreError as exc:
    _raise_store_error(exc)


@router.get("/api/events/{event_id}", response_model=CalendarEvent)
def get_event(event_id: str, store: EventStore = Depends(get_event_store)):
  event = store.get_by_id(event_id)
  if event is None:
    raise HTTPException(status_code=404, detail="Event not found")
  return event


@router.patch("/api/events/{event_id}", response_model=CalendarEvent)
async def update_event(event_id: str,
                       payload: EventUpdate,
                       store: EventStore = Depends(get_event_store)):
  patch = payload.model_dump(exclude_unset=True, exclude={"version"})
  if "title" in patch and not (patch["title"] or "").strip():
    raise HTTPException(status_code=422, detail="title must not be empty")
  try:
    return await store.update(event_id, patch, expected_version=payload.version)
  except (StoreError, ValidationError) as exc:
    _raise_store_error(exc)


@router.delete("/api/events/{event_id}", response_model=DeleteResult)
async def delete_event(event_id: str,
                       version: Optional[int] = Query(None),
                       store: EventStore = Depends(get_event_store)):
  try:
    deleted = await store.delete(event_id, expected_version=version)
  except StoreError as exc:
    _raise_store_error(exc)
  return DeleteResult(ok=True, deleted_ids=[deleted.id], count=1)


@router.post("/api/delete-by-ids", response_model=DeleteResult)
async def delete_by_ids(body: IdsPayload, store: EventStore = Depends(get_event_store)):
  try:
    deleted_ids = await store.delete_many(body.ids)
  except StoreError as exc:
    _raise_store_error(exc)
  return DeleteResult(ok=True, deleted_ids=deleted_ids, count=len(deleted_ids))


# -------------------------
# recurring events
# -------------------------
@router.post("/api/recurring-events/{event_id}/exceptions", response_model=CalendarEvent)
async def add_recurring_exception(event_id: str,
                                  payload: RecurringExceptionPayload,
                                  store: EventStore = Depends(get_event_store)):
  on_date = parse_iso_date(payload.date)
  if on_date is None:
    raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
  current = store.get_by_id(event_id)
  if current is not None and current.recurrence is None:
    raise HTTPException(status_code=400, detail="Event is not recurring")
  try:
    return await store.add_exception(event_id, on_date)
  except (StoreError, ValueError) as exc:
    _raise_store_error(exc)


@router.delete("/api/recurring-events/{event_id}")
async def delete_recurring_event(event_id: str,
                                 mode: DeleteMode = Query("single"),
                                 date_str: Optional[str] = Query(None, alias="date"),
                                 store: EventStore = Depends(get_event_store)):
  on_date = parse_iso_date(date_str)
  if date_str and on_date is None:
    raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
  try:
    updated = await store.delete_recurring(event_id, mode, on_date)
  except (StoreError, ValueError) as exc:
    _raise_store_error(exc)
  return {
      "ok": True,
      "series_deleted": updated is None,
      "event": updated.model_dump(mode="json") if updated is not None else None,
  }


# -------------------------
# scheduling
# -------------------------
@router.get("/api/conflicts", response_model=ConflictInfo)
def check_conflicts(start: datetime = Query(...),
                    end: datetime = Query(...),
                    timezone: Optional[str] = Query(None),
                    exclude_id: Optional[str] = Query(None),
                    store: EventStore = Depends(get_event_store),
                    detector: ConflictDetector = Depends(get_conflict_detector)):
  if end <= start:
    raise HTTPException(status_code=400, detail="end must be after start")
  tz = resolve_timezone(timezone)
  existing = _day_range_events(store, start.date(), end.date(), tz)
  return detector.check_conflict(start, end, existing, exclude_id=exclude_id)


@router.get("/api/free-slots", response_model=List[TimeSlot])
def free_slots(date_str: Optional[str] = Query(None, alias="date"),
               duration: int = Query(DEFAULT_EVENT_DURATION_MINUTES, ge=1, le=24 * 60),
               timezone: Optional[str] = Query(None),
               store: EventStore = Depends(get_event_store),
               detector: ConflictDetector = Depends(get_conflict_detector)):
  tz = resolve_timezone(timezone)
  day = parse_iso_date(date_str) if date_str else now_in_timezone(tz).date()
  if day is None:
    raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
  return detector.find_available_slots(day, duration, _day_range_events(store, day, day, tz))


@router.get("/api/analysis", response_model=ScheduleAnalysis)
def analysis(start_date: Optional[str] = Query(None),
             end_date: Optional[str] = Query(None),
             timezone: Optional[str] = Query(None),
             store: EventStore = Depends(get_event_store),
             detector: ConflictDetector = Depends(get_conflict_detector)):
  tz = resolve_timezone(timezone)
  scope = _parse_scope_dates(start_date, end_date, label="分析")
  if scope is None:
    today = now_in_timezone(tz).date()
    monday = today - timedelta(days=today.weekday())
    scope = (monday, monday + timedelta(days=6))
  return detector.analyze_busy_times(_day_range_events(store, scope[0], scope[1], tz))


# -------------------------
# agent
# -------------------------
@router.post("/api/agent/command", response_model=CommandResponse)
async def agent_command(body: CommandRequest,
                        agent: CommandOrchestrator = Depends(get_orchestrator)):
  if not body.message.strip():
    raise HTTPException(status_code=400, detail="message must not be empty")
  try:
    return await agent.handle_command(body.message,
                                      session_id=body.session_id or "default",
                                      timezone=body.timezone)
  except HTTPException:
    raise
  except Exception as exc:
    logger.exception("agent command failed: %s", exc)
    raise HTTPException(status_code=502, detail=f"Agent command error: {exc}") from exc


@router.delete("/api/agent/sessions/{session_id}/confirmation")
def clear_agent_confirmation(session_id: str,
                             agent: CommandOrchestrator = Depends(get_orchestrator)):
  return {"ok": True, "cleared": agent.clear_confirmation(session_id)}


# -------------------------
# import / export
# -------------------------
@router.get("/api/export")
def export_events(format: ExportFormat = Query("ics"),
                  store: EventStore = Depends(get_event_store)):
  events = sorted(store.all_events(), key=lambda e: (e.start, e.title))
  if format == "csv":
    body = export_csv(events)
    media_type = "text/csv; charset=utf-8"
  else:
    body = export_ics(events)
    media_type = "text/calendar; charset=utf-8"
  headers = {"Content-Disposition": f'attachment; filename="smartcal.{format}"'}
  return Response(content=body, media_type=media_type, headers=headers)


@router.post("/api/import", response_model=ImportResult)
async def import_events(request: Request,
                        format: ExportFormat = Query("ics"),
                        store: EventStore = Depends(get_event_store)):
  raw = await request.body()
  try:
    text = raw.decode("utf-8")
  except UnicodeDecodeError as exc:
    raise HTTPException(status_code=400, detail="Import body must be UTF-8 text") from exc
  if not text.strip():
    raise HTTPException(status_code=400, detail="Import body is empty")

  parsed = import_csv(text) if format == "csv" else import_ics(text)
  stored: List[CalendarEvent] = []
  errors = list(parsed.errors)
  for event in parsed.events:
    try:
      stored.append(await store.create(event))
    except StoreError as exc:
      logger.warning("import persist failed for '%s': %s", event.title, exc)
      errors.append(f"{event.title}: {exc}")
  return ImportResult(success=len(stored),
                      failed=parsed.failed + (len(parsed.events) - len(stored)),
                      errors=errors,
                      events=stored)


@router.get("/api/timezones")
def list_timezones():
  return SUPPORTED_TIMEZONES
