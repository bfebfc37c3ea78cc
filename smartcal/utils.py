from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Tuple

from fastapi import HTTPException

from .config import (
    LLM_DEBUG,
    DEFAULT_TZ,
    HHMM_RE,
    ISO_DATE_RE,
    MAX_SCOPE_DAYS,
)


def _log_debug(message: str) -> None:
    if LLM_DEBUG:
        print(message, flush=True)


def _now_iso_minute() -> str:
    return datetime.now(DEFAULT_TZ).strftime("%Y-%m-%dT%H:%M")


def parse_hhmm(value: Any) -> Optional[time]:
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not HHMM_RE.match(raw):
        return None
    hh, mm = [int(x) for x in raw.split(":")]
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        return None
    return time(hh, mm)


def parse_iso_date(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if "T" in raw:
        raw = raw.split("T")[0]
    if not ISO_DATE_RE.match(raw):
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except Exception:
        return None


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


def is_all_day_span(start: datetime, end: datetime) -> bool:
    if start.time() != time(0, 0):
        return False
    # Exclusive all-day end is 00:00 of a later day
    if end.time() == time(0, 0):
        return end.date() > start.date()
    # Legacy inclusive end 23:59 still recognized as all-day
    return end.time() == time(23, 59) and end.date() >= start.date()


def format_event_time(value: datetime) -> str:
    return value.strftime("%Y/%m/%d %H:%M")


def format_event_span(start: datetime, end: datetime, all_day: bool = False) -> str:
    if all_day:
        return f"{start.strftime('%Y/%m/%d')} 全天"
    if start.date() == end.date():
        return f"{format_event_time(start)}-{end.strftime('%H:%M')}"
    return f"{format_event_time(start)} - {format_event_time(end)}"


def _parse_scope_dates(start_str: Optional[str],
                       end_str: Optional[str],
                       require: bool = False,
                       max_days: Optional[int] = MAX_SCOPE_DAYS,
                       label: Optional[str] = None) -> Optional[Tuple[date, date]]:
    scope_label = label or ("删除" if require else "查询")
    if not start_str or not end_str:
        if require:
            raise HTTPException(status_code=400,
                                detail=f"请同时提供{scope_label}范围的开始和结束日期。")
        return None

    start_date = parse_iso_date(start_str)
    end_date = parse_iso_date(end_str)
    if start_date is None or end_date is None:
        raise HTTPException(status_code=400,
                            detail=f"{scope_label}范围的日期格式不正确。")

    if end_date < start_date:
        raise HTTPException(status_code=400,
                            detail=f"{scope_label}范围的结束日期早于开始日期。")

    if max_days is not None and (end_date - start_date).days > max_days:
        raise HTTPException(status_code=400,
                            detail=f"{scope_label}范围最多只能设置 {max_days} 天。")

    return (start_date, end_date)
