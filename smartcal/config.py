from __future__ import annotations

import os
import pathlib
import re
from zoneinfo import ZoneInfo

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
LLM_DEBUG = os.getenv("LLM_DEBUG", "0") == "1"

DEFAULT_TIMEZONE = os.getenv("CALENDAR_TIMEZONE", "Asia/Shanghai").strip() or "Asia/Shanghai"
DEFAULT_TZ = ZoneInfo(DEFAULT_TIMEZONE)

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
HHMM_RE = re.compile(r"^\d{2}:\d{2}$")

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
EVENTS_DATA_FILE = pathlib.Path(
    os.getenv("EVENTS_DATA_FILE", str(BASE_DIR / "events_data.json")))

CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "")
cors_origins: list[str] = []
if CORS_ALLOW_ORIGINS:
    cors_origins.extend(
        [origin.strip() for origin in CORS_ALLOW_ORIGINS.split(",") if origin.strip()])

# -------------------------
# LLM 设置
# -------------------------
ENABLE_LLM = os.getenv("ENABLE_LLM", "1") == "1"
AGENT_LLM_MODEL = os.getenv("AGENT_LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "20"))
LLM_MAX_COMPLETION_TOKENS = int(os.getenv("LLM_MAX_COMPLETION_TOKENS", "800"))

# -------------------------
# 日程/确认流程
# -------------------------
WORKING_HOURS_START = os.getenv("WORKING_HOURS_START", "09:00")
WORKING_HOURS_END = os.getenv("WORKING_HOURS_END", "18:00")
DEFAULT_EVENT_DURATION_MINUTES = int(os.getenv("DEFAULT_EVENT_DURATION_MINUTES", "60"))
DEFAULT_EVENT_TIME = "09:00"
CONFIRMATION_TTL_SECONDS = int(os.getenv("CONFIRMATION_TTL_SECONDS", "300"))

FUZZY_MATCH_MODE = os.getenv("FUZZY_MATCH_MODE", "positional").strip().lower() or "positional"
FUZZY_MATCH_THRESHOLD = 0.6
BATCH_CONFIDENCE_THRESHOLD = 0.8
MATCH_LIST_LIMIT = 5
MATCH_MAX_CANDIDATES = 10
TODAY_PREFERENCE_THRESHOLD = 5
MAX_CONFLICT_SUGGESTIONS = 3

# -------------------------
# 运行时限制/默认值
# -------------------------
MATCH_LOOKBACK_DAYS = 30
MAX_RECURRENCE_EXPANSION_DAYS = 365
MAX_RECURRENCE_OCCURRENCES = 400
MAX_SCOPE_DAYS = 366

CATEGORY_COLORS = {
    "work": "#3b82f6",
    "personal": "#10b981",
    "meeting": "#f59e0b",
    "holiday": "#ef4444",
    "travel": "#8b5cf6",
    "health": "#06b6d4",
    "other": "#6b7280",
}

SUPPORTED_TIMEZONES = [
    "Asia/Shanghai",
    "Asia/Tokyo",
    "Asia/Seoul",
    "Asia/Kolkata",
    "Asia/Dubai",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Europe/Moscow",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "America/Toronto",
    "America/Sao_Paulo",
    "Australia/Sydney",
    "Australia/Melbourne",
    "Pacific/Auckland",
    "UTC",
]
