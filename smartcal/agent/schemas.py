from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import CalendarEvent, EventCategory, Priority, RecurrenceRule, TimeSlot

IntentType = Literal["create", "delete", "update", "query", "confirm", "cancel", "unknown"]
PendingAction = Literal["delete", "create", "update"]


# ---------------------------------------------------------------------------
#  Intent classifier schemas
# ---------------------------------------------------------------------------

class Entities(BaseModel):
  """Structured fields pulled out of a free-text command."""
  model_config = ConfigDict(extra="ignore")

  event_title: Optional[str] = None
  date: Optional[str] = None
  time: Optional[str] = None
  location: Optional[str] = None


class ParsedIntent(BaseModel):
  model_config = ConfigDict(extra="ignore")

  type: IntentType
  confidence: float = Field(default=0.0, ge=0.0, le=1.0)
  entities: Entities = Field(default_factory=Entities)
  original_message: str = ""
  suggestions: List[str] = Field(default_factory=list)


class EventDraft(BaseModel):
  """A not-yet-stored event assembled by the create path."""
  model_config = ConfigDict(extra="ignore")

  title: str
  start: datetime
  end: datetime
  all_day: bool = False
  location: Optional[str] = None
  description: Optional[str] = None
  category: EventCategory = "work"
  priority: Priority = "medium"
  recurrence: Optional[RecurrenceRule] = None
  source: Literal["rules", "llm"] = "rules"


# ---------------------------------------------------------------------------
#  Confirmation flow
# ---------------------------------------------------------------------------

class ConfirmationContext(BaseModel):
  model_config = ConfigDict(extra="ignore")

  pending_action: PendingAction
  target_events: List[CalendarEvent] = Field(default_factory=list)
  original_message: str = ""
  timestamp: float
  confidence: float = 0.0
  patch: Optional[Dict[str, Any]] = None
  draft: Optional[EventDraft] = None
  suggestions: List[TimeSlot] = Field(default_factory=list)


# ---------------------------------------------------------------------------
#  Orchestrator output
# ---------------------------------------------------------------------------

class FunctionCallRecord(BaseModel):
  """Audit record of a mutation the orchestrator actually performed."""
  model_config = ConfigDict(extra="ignore")

  name: str
  arguments: Dict[str, Any] = Field(default_factory=dict)
  success: bool = True
  result: Optional[Any] = None


class CommandResponse(BaseModel):
  model_config = ConfigDict(extra="ignore")

  success: bool
  message: str
  needs_confirmation: bool = False
  candidate_events: Optional[List[CalendarEvent]] = None
  suggestions: Optional[List[str]] = None
  function_calls: Optional[List[FunctionCallRecord]] = None
  intent: Optional[IntentType] = None


# ---------------------------------------------------------------------------
#  LLM function calling
# ---------------------------------------------------------------------------

class CreateEventArguments(BaseModel):
  """Arguments of the createCalendarEvent function call."""
  model_config = ConfigDict(extra="ignore", populate_by_name=True)

  title: str = Field(min_length=1)
  start_time: str = Field(alias="startTime")
  end_time: str = Field(alias="endTime")
  location: Optional[str] = None
  description: Optional[str] = None
  category: Optional[EventCategory] = None
  priority: Optional[Priority] = None


class LLMReply(BaseModel):
  """Either free text or a parsed createCalendarEvent call."""
  model_config = ConfigDict(extra="ignore")

  text: Optional[str] = None
  function_name: Optional[str] = None
  arguments: Optional[CreateEventArguments] = None
