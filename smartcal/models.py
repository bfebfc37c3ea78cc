from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import CATEGORY_COLORS, DEFAULT_TIMEZONE

EventCategory = Literal["work", "personal", "meeting", "holiday", "travel", "health", "other"]
Priority = Literal["low", "medium", "high"]
Frequency = Literal["daily", "weekly", "monthly", "yearly"]


def _check_timezone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    try:
        ZoneInfo(cleaned)
    except Exception:
        raise ValueError(f"unknown timezone: {value}")
    return cleaned


# -------------------------
# Recurrence
# -------------------------
class CountEnd(BaseModel):
    kind: Literal["count"] = "count"
    count: int = Field(ge=1)


class UntilEnd(BaseModel):
    kind: Literal["until"] = "until"
    until: date


class NeverEnd(BaseModel):
    kind: Literal["never"] = "never"


RecurrenceEnd = Annotated[Union[CountEnd, UntilEnd, NeverEnd], Field(discriminator="kind")]


class RecurrenceRule(BaseModel):
    freq: Frequency
    interval: int = Field(default=1, ge=1)
    by_weekday: Optional[List[int]] = None
    by_month_day: Optional[List[int]] = None
    by_month: Optional[List[int]] = None
    end: RecurrenceEnd = Field(default_factory=NeverEnd)
    exceptions: List[date] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _coerce_end(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("freq"), str):
            data["freq"] = data["freq"].strip().lower()
        end = data.get("end")
        if end is None:
            data.pop("end", None)
            return data
        if isinstance(end, dict) and "kind" not in end:
            has_count = end.get("count") is not None
            has_until = end.get("until") is not None
            if has_count and has_until:
                raise ValueError("recurrence end takes either count or until, not both")
            if has_count:
                data["end"] = {"kind": "count", "count": end.get("count")}
            elif has_until:
                data["end"] = {"kind": "until", "until": end.get("until")}
            else:
                data["end"] = {"kind": "never"}
        return data

    @field_validator("by_weekday")
    @classmethod
    def _check_weekdays(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return None
        if any(not 0 <= v <= 6 for v in value):
            raise ValueError("by_weekday values must be within 0..6")
        return sorted(set(value)) or None

    @field_validator("by_month_day")
    @classmethod
    def _check_month_days(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return None
        if any(not (v == -1 or 1 <= v <= 31) for v in value):
            raise ValueError("by_month_day values must be within 1..31 or -1")
        return sorted(set(value)) or None

    @field_validator("by_month")
    @classmethod
    def _check_months(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return None
        if any(not 1 <= v <= 12 for v in value):
            raise ValueError("by_month values must be within 1..12")
        return sorted(set(value)) or None

    @field_validator("exceptions")
    @classmethod
    def _dedupe_exceptions(cls, value: List[date]) -> List[date]:
        return sorted(set(value))


# -------------------------
# Events
# -------------------------
class CalendarEvent(BaseModel):
    id: str
    title: str = Field(min_length=1)
    description: Optional[str] = None
    start: datetime  # wall-clock time in `timezone`
    end: datetime
    all_day: bool = False
    location: Optional[str] = None
    category: EventCategory = "work"
    color: Optional[str] = None
    priority: Priority = "medium"
    timezone: str = DEFAULT_TIMEZONE
    recurrence: Optional[RecurrenceRule] = None
    version: int = 1
    created_at: Optional[str] = None
    original_event: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: str) -> str:
        return _check_timezone(value) or DEFAULT_TIMEZONE

    @model_validator(mode="after")
    def _check_span(self) -> "CalendarEvent":
        tz = ZoneInfo(self.timezone)
        if self.start.tzinfo is not None:
            self.start = self.start.astimezone(tz).replace(tzinfo=None)
        if self.end.tzinfo is not None:
            self.end = self.end.astimezone(tz).replace(tzinfo=None)
        if self.end <= self.start:
            raise ValueError("event end must be after its start")
        if not self.color:
            self.color = CATEGORY_COLORS.get(self.category, CATEGORY_COLORS["other"])
        return self

    @property
    def base_id(self) -> str:
        return self.original_event or self.id

    @property
    def is_occurrence(self) -> bool:
        return self.original_event is not None


class EventCreate(BaseModel):
    title: str = Field(min_length=1)
    start: datetime
    end: Optional[datetime] = None
    all_day: Optional[bool] = None
    location: Optional[str] = None
    description: Optional[str] = None
    category: Optional[EventCategory] = None
    priority: Optional[Priority] = None
    timezone: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: Optional[str]) -> Optional[str]:
        return _check_timezone(value)


class EventUpdate(BaseModel):
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: Optional[bool] = None
    location: Optional[str] = None
    description: Optional[str] = None
    category: Optional[EventCategory] = None
    priority: Optional[Priority] = None
    timezone: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None
    version: Optional[int] = None


class RecurringExceptionPayload(BaseModel):
    date: str


class DeleteResult(BaseModel):
    ok: bool
    deleted_ids: List[str]
    count: int


class IdsPayload(BaseModel):
    ids: List[str]


# -------------------------
# Scheduling
# -------------------------
class TimeSlot(BaseModel):
    start: datetime
    end: datetime
    available: bool = True


class ConflictInfo(BaseModel):
    has_conflict: bool
    conflicting_events: List[CalendarEvent] = Field(default_factory=list)
    suggestions: List[TimeSlot] = Field(default_factory=list)


class ScheduleAnalysis(BaseModel):
    total_events: int
    total_hours: float
    average_event_duration: int
    busiest_day: Optional[date] = None
    busiest_time_slot: Optional[str] = None
    fragmented_minutes: int = 0
    focus_time_blocks: List[TimeSlot] = Field(default_factory=list)
    category_counts: Dict[str, int] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)


# -------------------------
# Agent / import
# -------------------------
class CommandRequest(BaseModel):
    message: str
    session_id: str = "default"
    timezone: Optional[str] = None


class ImportResult(BaseModel):
    success: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    events: List[CalendarEvent] = Field(default_factory=list)
