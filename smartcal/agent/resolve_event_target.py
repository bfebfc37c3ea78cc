from __future__ import annotations

from datetime import date
from difflib import SequenceMatcher
from typing import List, Literal, Optional
import re

from pydantic import BaseModel, ConfigDict, Field

from ..config import (
    BATCH_CONFIDENCE_THRESHOLD,
    FUZZY_MATCH_MODE,
    FUZZY_MATCH_THRESHOLD,
    MATCH_LIST_LIMIT,
    MATCH_MAX_CANDIDATES,
    TODAY_PREFERENCE_THRESHOLD,
)
from ..models import CalendarEvent
from ..utils import _log_debug
from .normalizer import parse_specific_date, resolve_day_word
from .schemas import Entities, ParsedIntent

MatchStatus = Literal["none", "single", "batch", "ambiguous", "too_many"]

_HOUR_RE = re.compile(r"(\d{1,2})[点时]")


class MatchResult(BaseModel):
  model_config = ConfigDict(extra="ignore")

  status: MatchStatus
  events: List[CalendarEvent] = Field(default_factory=list)
  confidence: float = 0.0


# -------------------------
# Title similarity
# -------------------------
def positional_similarity(a: str, b: str) -> float:
  """Equal characters at the same index over the shorter length."""
  shorter = min(len(a), len(b))
  if shorter < 2:
    return 0.0
  same = sum(1 for i in range(shorter) if a[i] == b[i])
  return same / shorter


def _bigrams(text: str) -> set:
  return {text[i:i + 2] for i in range(len(text) - 1)}


def token_similarity(a: str, b: str) -> float:
  if min(len(a), len(b)) < 2:
    return 0.0
  grams_a, grams_b = _bigrams(a), _bigrams(b)
  union = grams_a | grams_b
  jaccard = len(grams_a & grams_b) / len(union) if union else 0.0
  return max(jaccard, SequenceMatcher(None, a, b).ratio())


def fuzzy_match(a: str, b: str, mode: Optional[str] = None) -> bool:
  left = (a or "").strip().lower()
  right = (b or "").strip().lower()
  if not left or not right:
    return False
  if left in right or right in left:
    return True
  if (mode or FUZZY_MATCH_MODE) == "similarity":
    return token_similarity(left, right) > FUZZY_MATCH_THRESHOLD
  return positional_similarity(left, right) > FUZZY_MATCH_THRESHOLD


# -------------------------
# Filters
# -------------------------
def filter_by_title(events: List[CalendarEvent],
                    title: str,
                    mode: Optional[str] = None) -> List[CalendarEvent]:
  return [ev for ev in events if fuzzy_match(ev.title, title, mode)]


def filter_by_date(events: List[CalendarEvent], date_text: str, today: date) -> List[CalendarEvent]:
  target = resolve_day_word(date_text, today) or parse_specific_date(date_text, today)
  if target is None:
    return events
  return [ev for ev in events if ev.start.date() == target]


def filter_by_time(events: List[CalendarEvent], time_text: str, message: str = "") -> List[CalendarEvent]:
  if "上午" in time_text:
    return [ev for ev in events if ev.start.hour < 12]
  if "下午" in time_text:
    return [ev for ev in events if 12 <= ev.start.hour < 18]
  if "晚上" in time_text:
    return [ev for ev in events if ev.start.hour >= 18]

  match = _HOUR_RE.search(time_text)
  if not match:
    return events
  hour = int(match.group(1))
  context = message or time_text
  if hour < 12 and ("下午" in context or "晚上" in context):
    hour += 12
  return [ev for ev in events if ev.start.hour == hour]


class EventMatcher:
  """Narrows the calendar down to the events a command refers to."""

  def __init__(self, fuzzy_mode: Optional[str] = None):
    self.fuzzy_mode = fuzzy_mode or FUZZY_MATCH_MODE

  def find_candidates(self,
                      entities: Entities,
                      events: List[CalendarEvent],
                      today: date,
                      message: str = "") -> List[CalendarEvent]:
    matching = list(events)
    if entities.event_title:
      matching = filter_by_title(matching, entities.event_title, self.fuzzy_mode)
    if entities.date:
      matching = filter_by_date(matching, entities.date, today)
    if entities.time:
      matching = filter_by_time(matching, entities.time, message)

    if (not entities.event_title and not entities.date
        and len(matching) > TODAY_PREFERENCE_THRESHOLD):
      todays = filter_by_date(matching, "今天", today)
      if todays:
        matching = todays

    _log_debug(f"[AGENT] matcher {len(events)} -> {len(matching)} candidates")
    return matching

  def resolve(self,
              intent: ParsedIntent,
              events: List[CalendarEvent],
              today: date,
              allow_batch: bool = True) -> MatchResult:
    candidates = self.find_candidates(intent.entities, events, today, intent.original_message)
    count = len(candidates)
    if count == 0:
      status: MatchStatus = "none"
    elif count == 1:
      status = "single"
    elif count > MATCH_MAX_CANDIDATES:
      status = "too_many"
    elif (allow_batch and intent.confidence > BATCH_CONFIDENCE_THRESHOLD
          and count <= MATCH_LIST_LIMIT):
      status = "batch"
    else:
      status = "ambiguous"
    return MatchResult(status=status, events=candidates, confidence=intent.confidence)
