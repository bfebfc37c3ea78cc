from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional
import re
from zoneinfo import ZoneInfo

from ..config import DEFAULT_TIMEZONE
from ..models import CountEnd, RecurrenceRule

_WEEKDAY_CHARS = {"一": 0, "二": 1, "三": 2, "四": 3, "五": 4, "六": 5, "日": 6, "天": 6}
_CN_DIGITS = {"零": 0, "一": 1, "二": 2, "两": 2, "三": 3, "四": 4, "五": 5,
              "六": 6, "七": 7, "八": 8, "九": 9, "十": 10}
_DAY_WORD_OFFSETS = {"今天": 0, "今日": 0, "明天": 1, "明日": 1, "后天": 2, "昨天": -1}

_NUMERIC_DATE_RE = re.compile(r"(\d{1,2})[./-](\d{1,2})")
_MONTH_DAY_RE = re.compile(r"(\d{1,2})月(\d{1,2})[日号]?")
_WEEKDAY_RE = re.compile(r"(下|上|本|这)?(?:周|星期)([一二三四五六日天])(?![程历常])")
_CLOCK_RE = re.compile(r"(\d{1,2})[:：](\d{2})")
_HOUR_RE = re.compile(r"(\d{1,2})[点时](半|(\d{1,2})分?)?")
_DURATION_HOURS_RE = re.compile(r"([\d.]+|[一二两三四五六七八九十]+)个?(半)?(?:小时|钟头)")
_DURATION_MINUTES_RE = re.compile(r"(\d+)\s*分钟")
_COUNT_RE = re.compile(r"(?:共|重复)?(\d+)次")
_MONTH_DAY_RECUR_RE = re.compile(r"每(?:个)?月(\d{1,2})[日号]")

# Default clock time for a bare period word
_PERIOD_DEFAULTS = {
    "凌晨": time(6, 0),
    "上午": time(9, 0),
    "中午": time(12, 0),
    "下午": time(14, 0),
    "晚上": time(19, 0),
}


def normalize_message(value: Optional[str]) -> str:
  if not isinstance(value, str):
    return ""
  return value.strip().lower()


def resolve_timezone(requested_timezone: Optional[str]) -> str:
  for candidate in (requested_timezone, DEFAULT_TIMEZONE):
    if not isinstance(candidate, str):
      continue
    cleaned = candidate.strip()
    if not cleaned:
      continue
    try:
      ZoneInfo(cleaned)
      return cleaned
    except Exception:
      continue
  return "UTC"


def now_in_timezone(timezone_name: str) -> datetime:
  """Current wall-clock time in `timezone_name`, without tzinfo."""
  return datetime.now(ZoneInfo(timezone_name)).replace(tzinfo=None, second=0, microsecond=0)


def _cn_number(raw: str) -> Optional[float]:
  try:
    return float(raw)
  except ValueError:
    pass
  if raw == "十":
    return 10.0
  if raw.startswith("十"):
    tail = _CN_DIGITS.get(raw[1:])
    return 10.0 + tail if tail is not None else None
  if raw.endswith("十") and len(raw) == 2:
    head = _CN_DIGITS.get(raw[0])
    return head * 10.0 if head is not None else None
  value = _CN_DIGITS.get(raw)
  return float(value) if value is not None else None


# ---------------------------------------------------------------------------
#  Dates
# ---------------------------------------------------------------------------

def _roll_forward(month: int, day: int, today: date) -> Optional[date]:
  try:
    candidate = date(today.year, month, day)
  except ValueError:
    return None
  if candidate < today:
    try:
      candidate = date(today.year + 1, month, day)
    except ValueError:
      return None
  return candidate


def parse_specific_date(date_text: str, today: date) -> Optional[date]:
  """M.D / M/D / M-D / M月D日 in the current year; a passed date rolls to next year."""
  if not isinstance(date_text, str):
    return None
  match = _NUMERIC_DATE_RE.search(date_text)
  if match:
    return _roll_forward(int(match.group(1)), int(match.group(2)), today)
  match = _MONTH_DAY_RE.search(date_text)
  if match:
    return _roll_forward(int(match.group(1)), int(match.group(2)), today)
  return None


def resolve_day_word(date_text: str, today: date) -> Optional[date]:
  offset = _DAY_WORD_OFFSETS.get((date_text or "").strip())
  if offset is None:
    return None
  return today + timedelta(days=offset)


def resolve_weekday(message: str, today: date) -> Optional[date]:
  match = _WEEKDAY_RE.search(message or "")
  if not match:
    return None
  prefix, day_char = match.group(1), match.group(2)
  weekday = _WEEKDAY_CHARS[day_char]
  monday = today - timedelta(days=today.weekday())
  if prefix == "下":
    return monday + timedelta(days=7 + weekday)
  if prefix == "上":
    return monday - timedelta(days=7) + timedelta(days=weekday)
  if prefix in ("本", "这"):
    return monday + timedelta(days=weekday)
  # Bare 周X means the next such day, today included
  return today + timedelta(days=(weekday - today.weekday()) % 7)


def resolve_event_date(date_text: Optional[str], message: str, today: date) -> Optional[date]:
  """Date for a new event from the date entity and the full message."""
  weekday_date = resolve_weekday(message, today)
  if weekday_date is not None:
    return weekday_date
  if not date_text:
    return None
  resolved = resolve_day_word(date_text, today)
  if resolved is not None:
    return resolved
  resolved = parse_specific_date(date_text, today)
  if resolved is not None:
    return resolved
  if date_text == "下周":
    return today + timedelta(days=7)
  return None


# ---------------------------------------------------------------------------
#  Times
# ---------------------------------------------------------------------------

def _apply_period(hour: int, message: str) -> int:
  if hour < 12 and ("下午" in message or "晚上" in message):
    return hour + 12
  if hour < 11 and "中午" in message:
    return hour + 12
  return hour


def resolve_clock_time(time_text: Optional[str], message: str) -> Optional[time]:
  """Clock time from "15:30", "3点半", "下午3点" or a bare period word."""
  source = message or time_text or ""
  match = _CLOCK_RE.search(source)
  if match:
    hour, minute = int(match.group(1)), int(match.group(2))
    hour = _apply_period(hour, source)
    if 0 <= hour <= 23 and 0 <= minute <= 59:
      return time(hour, minute)
    return None

  match = _HOUR_RE.search(source)
  if match:
    hour = int(match.group(1))
    minute = 0
    if match.group(2) == "半":
      minute = 30
    elif match.group(3):
      minute = int(match.group(3))
    hour = _apply_period(hour, source)
    if 0 <= hour <= 23 and 0 <= minute <= 59:
      return time(hour, minute)
    return None

  for word, default in _PERIOD_DEFAULTS.items():
    if word in source:
      return default
  return None


def parse_duration_minutes(message: str) -> Optional[int]:
  text = message or ""
  if "半小时" in text and not _DURATION_HOURS_RE.search(text):
    return 30
  match = _DURATION_HOURS_RE.search(text)
  if match:
    value = _cn_number(match.group(1))
    if value is not None and value > 0:
      minutes = int(value * 60) + (30 if match.group(2) else 0)
      return minutes
  match = _DURATION_MINUTES_RE.search(text)
  if match and int(match.group(1)) > 0:
    return int(match.group(1))
  return None


def is_all_day_request(message: str) -> bool:
  return "全天" in (message or "") or "整天" in (message or "")


# ---------------------------------------------------------------------------
#  Recurrence phrases
# ---------------------------------------------------------------------------

def detect_recurrence(message: str, start_date: date) -> Optional[RecurrenceRule]:
  text = message or ""
  rule: Dict[str, Any] = {}
  if "每天" in text or "天天" in text or "每日" in text:
    rule = {"freq": "daily"}
  elif "工作日" in text:
    rule = {"freq": "weekly", "by_weekday": [0, 1, 2, 3, 4]}
  elif "每周" in text or "每星期" in text or "每个星期" in text:
    weekdays: List[int] = []
    match = re.search(r"每(?:个)?(?:周|星期)([一二三四五六日天、和,，]+)", text)
    if match:
      weekdays = sorted({_WEEKDAY_CHARS[c] for c in match.group(1) if c in _WEEKDAY_CHARS})
    rule = {"freq": "weekly", "by_weekday": weekdays or [start_date.weekday()]}
  elif "每月" in text or "每个月" in text:
    match = _MONTH_DAY_RECUR_RE.search(text)
    day = int(match.group(1)) if match else start_date.day
    rule = {"freq": "monthly", "by_month_day": [day]}
  elif "每年" in text:
    rule = {"freq": "yearly"}
  if not rule:
    return None

  count_match = _COUNT_RE.search(text)
  if count_match and int(count_match.group(1)) > 0:
    rule["end"] = CountEnd(count=int(count_match.group(1)))
  try:
    return RecurrenceRule(**rule)
  except Exception:
    return None


# ---------------------------------------------------------------------------
#  LLM output coercion
# ---------------------------------------------------------------------------

def coerce_local_datetime(value: Any, timezone_name: str) -> Optional[datetime]:
  """ISO-8601 string -> naive wall-clock datetime in `timezone_name`."""
  if not isinstance(value, str):
    return None
  raw = value.strip()
  if not raw:
    return None
  # Strip spaces around colons ("13: 00: 00+08: 00")
  raw = re.sub(r"\s*:\s*", ":", raw)
  try:
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
  except Exception:
    return None
  if parsed.tzinfo is not None:
    parsed = parsed.astimezone(ZoneInfo(timezone_name)).replace(tzinfo=None)
  return parsed.replace(second=0, microsecond=0)
