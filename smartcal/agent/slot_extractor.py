from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
import re

from ..config import DEFAULT_EVENT_DURATION_MINUTES, DEFAULT_EVENT_TIME
from ..models import EventCategory
from ..utils import parse_hhmm
from .normalizer import (
    detect_recurrence,
    is_all_day_request,
    parse_duration_minutes,
    resolve_clock_time,
    resolve_event_date,
)
from .schemas import Entities, EventDraft

# -------------------------
# Entity patterns
# -------------------------
_TITLE_NOISE_PATTERNS = (
    r"删除|取消|清除|移除|创建|添加|安排|查看",
    r"今天|明天|后天|昨天|下周|本周|这周",
    r"\d+[./-]\d+",
    r"上午|下午|晚上|中午|凌晨",
    r"\d+[点时]",
    r"的|了|吧|呢|啊|呀",
)
_TITLE_PATTERNS = (
    re.compile(r"[^，。！？]*(会议|约会|活动|培训|课程|聚会|面试|考试|讲座)"),
    re.compile(r"[^，。！？]*(项目|工作|任务|计划|安排)"),
    re.compile(r"\"([^\"]+)\""),
    re.compile(r"'([^']+)'"),
)
_DATE_PATTERNS = (
    re.compile(r"\d{1,2}[./-]\d{1,2}"),
    re.compile(r"\d{1,2}月\d{1,2}[日号]?"),
    re.compile(r"今天|明天|后天|昨天"),
    re.compile(r"下周|本周|这周|上周"),
    re.compile(r"周[一二三四五六日天](?![程历常])"),
)
_TIME_PATTERNS = (
    re.compile(r"\d{1,2}[点时]\d{0,2}分?"),
    re.compile(r"上午|下午|晚上|中午|凌晨"),
    re.compile(r"\d{1,2}:\d{2}"),
)
_LOCATION_KEYWORDS = ("在", "去", "到", "会议室", "办公室", "家", "公司", "学校")
_LOCATION_WINDOW = 10

# Leading verbs dropped from a new event's title ("开项目会议" -> "项目会议")
_CREATE_VERB_RE = re.compile(r"^(?:帮我|请|我要|我想|给我)?(?:开|参加|召开|举行|举办|进行|有|去|约|预约|安排|创建|添加|新建|设置)+")
_CREATE_NOISE_RE = re.compile(
    r"每天|天天|每日|每周[一二三四五六日天、和]*|每星期[一二三四五六日天、和]*|每个?月(?:\d{1,2}[日号])?|每年|工作日"
    r"|全天|整天|\d+次|[\d一二两三四五六七八九十.]+个?半?(?:小时|钟头)|半小时|\d+分钟"
    r"|(?:下|上|本|这)?(?:周|星期)[一二三四五六日天]|\d{1,2}[:：]\d{2}|\d{1,2}[点时](?:半|\d{1,2}分?)?"
    r"|\d{1,2}月\d{1,2}[日号]?")

# Checked in order: 项目会议 is work, not meeting
_CATEGORY_KEYWORDS: Tuple[Tuple[Tuple[str, ...], EventCategory], ...] = (
    (("项目", "工作"), "work"),
    (("会议",), "meeting"),
    (("个人",), "personal"),
    (("假期",), "holiday"),
    (("旅行",), "travel"),
    (("健康",), "health"),
)

_UPDATE_SPLIT_RE = re.compile(r"修改|更改|改到|改成|改为|推迟|提前|挪到|移到|调整|改期")


def _first_match(patterns, text: str) -> Optional[str]:
  for pattern in patterns:
    match = pattern.search(text)
    if match:
      return match.group(0)
  return None


def extract_title(message: str) -> Optional[str]:
  cleaned = message or ""
  for noise in _TITLE_NOISE_PATTERNS:
    cleaned = re.sub(noise, "", cleaned)
  cleaned = cleaned.strip()

  for idx, pattern in enumerate(_TITLE_PATTERNS):
    match = pattern.search(cleaned)
    if not match:
      continue
    # keyword patterns keep the whole phrase, quote patterns keep the inside
    candidate = (match.group(0) if idx < 2 else match.group(1)).strip()
    if len(candidate) > 1:
      return candidate

  if 1 < len(cleaned) < 20:
    return cleaned
  return None


def extract_date(message: str) -> Optional[str]:
  return _first_match(_DATE_PATTERNS, message or "")


def extract_time(message: str) -> Optional[str]:
  return _first_match(_TIME_PATTERNS, message or "")


def extract_location(message: str) -> Optional[str]:
  text = message or ""
  for keyword in _LOCATION_KEYWORDS:
    idx = text.find(keyword)
    if idx < 0:
      continue
    window = text[idx + len(keyword):idx + len(keyword) + _LOCATION_WINDOW].strip()
    piece = re.split(r"[，。！？\s]", window)[0] if window else ""
    if piece:
      return piece
  return None


def extract_entities(message: str) -> Entities:
  return Entities(
      event_title=extract_title(message),
      date=extract_date(message),
      time=extract_time(message),
      location=extract_location(message),
  )


def extract_category(message: str) -> EventCategory:
  text = message or ""
  for keywords, category in _CATEGORY_KEYWORDS:
    if any(k in text for k in keywords):
      return category
  return "work"


def clean_create_title(title: Optional[str]) -> Optional[str]:
  if not title:
    return None
  cleaned = _CREATE_NOISE_RE.sub("", title).strip()
  cleaned = _CREATE_VERB_RE.sub("", cleaned).strip()
  cleaned = cleaned.strip("，。！？,.!? ")
  return cleaned if len(cleaned) > 0 else None


def build_event_draft(entities: Entities,
                      message: str,
                      now: datetime) -> Optional[EventDraft]:
  """Offline draft for a create command; None when no title can be found."""
  title = clean_create_title(entities.event_title) or clean_create_title(extract_title(message))
  if not title:
    return None

  today = now.date()
  day = resolve_event_date(entities.date, message, today) or today
  all_day = is_all_day_request(message)
  if all_day:
    start = datetime(day.year, day.month, day.day)
    end = start + timedelta(days=1)
  else:
    clock = resolve_clock_time(entities.time, message) or parse_hhmm(DEFAULT_EVENT_TIME)
    start = datetime.combine(day, clock)
    duration = parse_duration_minutes(message) or DEFAULT_EVENT_DURATION_MINUTES
    end = start + timedelta(minutes=duration)

  return EventDraft(
      title=title,
      start=start,
      end=end,
      all_day=all_day,
      location=entities.location,
      category=extract_category(message),
      recurrence=detect_recurrence(message, day),
      source="rules",
  )


def split_update_message(message: str) -> Tuple[str, str]:
  """Split at the first update keyword: (target description, new values)."""
  text = message or ""
  match = _UPDATE_SPLIT_RE.search(text)
  if not match:
    return text, ""
  return text[:match.start()], text[match.end():]


def build_update_patch(change_text: str,
                       target_start: datetime,
                       target_end: datetime,
                       now: datetime) -> Dict[str, Any]:
  """Patch for the right-hand side of an update command.

  A new date keeps the time of day, a new time keeps the date, and the
  duration is preserved unless a new duration is given.
  """
  patch: Dict[str, Any] = {}
  text = change_text or ""
  duration = target_end - target_start
  explicit_duration = parse_duration_minutes(text)
  if explicit_duration:
    duration = timedelta(minutes=explicit_duration)

  new_day = resolve_event_date(extract_date(text), text, now.date())
  time_text = extract_time(text)
  new_clock = resolve_clock_time(time_text, text) if time_text else None

  if new_day is not None or new_clock is not None or explicit_duration:
    day = new_day or target_start.date()
    clock = new_clock or target_start.time()
    start = datetime.combine(day, clock)
    patch["start"] = start
    patch["end"] = start + duration

  location = extract_location(text)
  if location:
    patch["location"] = location

  quoted = re.search(r"[\"“]([^\"”]+)[\"”]", text)
  if quoted and quoted.group(1).strip():
    patch["title"] = quoted.group(1).strip()
  return patch
