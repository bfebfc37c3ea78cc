from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple
import calendar
import re

from zoneinfo import ZoneInfo

from .config import (
    MAX_RECURRENCE_EXPANSION_DAYS,
    MAX_RECURRENCE_OCCURRENCES,
)
from .models import CalendarEvent, CountEnd, NeverEnd, RecurrenceRule, UntilEnd

DeleteMode = Literal["single", "following", "all"]

_RRULE_FREQS = {"DAILY", "WEEKLY", "MONTHLY", "YEARLY"}
_RRULE_WEEKDAY_TO_INDEX = {
    "MO": 0,
    "TU": 1,
    "WE": 2,
    "TH": 3,
    "FR": 4,
    "SA": 5,
    "SU": 6,
}
_RRULE_INDEX_TO_WEEKDAY = ["MO", "TU", "WE", "TH", "FR", "SA", "SU"]


def _month_last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _monthly_candidates(year: int,
                        month: int,
                        rule: RecurrenceRule,
                        default_day: int) -> List[date]:
    bymonthday = rule.by_month_day or []
    byweekday = rule.by_weekday or []
    last_day = _month_last_day(year, month)
    results: List[date] = []

    for d in bymonthday:
        if d == -1:
            day = last_day
        elif 1 <= d <= last_day:
            day = d
        else:
            continue
        results.append(date(year, month, day))

    if byweekday and not bymonthday:
        first = date(year, month, 1)
        for w in byweekday:
            dt = first + timedelta(days=(w - first.weekday()) % 7)
            while dt.month == month:
                results.append(dt)
                dt = dt + timedelta(days=7)

    if not results and not bymonthday and not byweekday:
        # A month without the base day (e.g. the 31st) yields nothing
        if default_day <= last_day:
            results.append(date(year, month, default_day))

    return sorted(set(results))


def _add_months(year: int, month: int, delta: int) -> Tuple[int, int]:
    total = (year * 12 + (month - 1)) + delta
    new_year = total // 12
    new_month = total % 12 + 1
    return new_year, new_month


def collect_recurrence_dates(rule: RecurrenceRule,
                             start_date: date,
                             scope: Optional[Tuple[date, date]] = None) -> List[date]:
    """Occurrence dates of `rule` for a series starting on `start_date`.

    Count is always measured from the series start, so a scoped query still
    returns only the first N dates of the series that fall inside `scope`.
    """
    interval = max(int(rule.interval or 1), 1)

    until_date: Optional[date] = None
    count: Optional[int] = None
    if isinstance(rule.end, UntilEnd):
        until_date = rule.end.until
    elif isinstance(rule.end, CountEnd):
        count = min(rule.end.count, MAX_RECURRENCE_OCCURRENCES)

    limit_date = start_date + timedelta(days=MAX_RECURRENCE_EXPANSION_DAYS)
    if scope:
        limit_date = scope[1]
    elif count is not None and not until_date:
        limit_date = start_date + timedelta(days=MAX_RECURRENCE_EXPANSION_DAYS * count)
    if until_date and until_date < limit_date:
        limit_date = until_date

    # Without a count, dates before the scope never need to be kept
    scope_start = start_date
    if count is None and scope and scope[0] > start_date:
        scope_start = scope[0]

    results: List[date] = []

    def push_date(d: date) -> bool:
        if d < scope_start or d > limit_date:
            return False
        results.append(d)
        if len(results) >= MAX_RECURRENCE_OCCURRENCES:
            return True
        if count is not None and len(results) >= count:
            return True
        return False

    if rule.freq == "daily":
        cur = start_date
        # Without a count the walk can jump straight to the scope
        if scope_start > start_date:
            delta_days = (scope_start - start_date).days
            cur = start_date + timedelta(days=(delta_days // interval) * interval)
        while cur <= limit_date:
            if (not rule.by_weekday or cur.weekday() in rule.by_weekday) and \
                    (not rule.by_month or cur.month in rule.by_month):
                if push_date(cur):
                    break
            cur += timedelta(days=interval)

    elif rule.freq == "weekly":
        weekdays = rule.by_weekday or [start_date.weekday()]
        base = start_date - timedelta(days=start_date.weekday())
        week_index = 0
        done = False
        while not done:
            week_start = base + timedelta(days=week_index * interval * 7)
            if week_start > limit_date:
                break
            for w in weekdays:
                occ = week_start + timedelta(days=w)
                if rule.by_month and occ.month not in rule.by_month:
                    continue
                if push_date(occ):
                    done = True
                    break
            week_index += 1

    elif rule.freq == "monthly":
        month_index = 0
        done = False
        while not done:
            year, month = _add_months(start_date.year, start_date.month,
                                      month_index * interval)
            if date(year, month, 1) > limit_date:
                break
            if not rule.by_month or month in rule.by_month:
                for occ in _monthly_candidates(year, month, rule, start_date.day):
                    if push_date(occ):
                        done = True
                        break
            month_index += 1

    elif rule.freq == "yearly":
        months = rule.by_month or [start_date.month]
        year_index = 0
        done = False
        while not done:
            year = start_date.year + year_index * interval
            if date(year, 1, 1) > limit_date:
                break
            for month in months:
                for occ in _monthly_candidates(year, month, rule, start_date.day):
                    if push_date(occ):
                        done = True
                        break
                if done:
                    break
            year_index += 1

    results.sort()
    if scope:
        return [d for d in results if scope[0] <= d <= scope[1]]
    return results


def convert_timezone(value: datetime, source_tz: str, target_tz: str) -> datetime:
    """Re-express a naive wall-clock time from `source_tz` in `target_tz`."""
    if source_tz == target_tz:
        return value
    try:
        aware = value.replace(tzinfo=ZoneInfo(source_tz))
        return aware.astimezone(ZoneInfo(target_tz)).replace(tzinfo=None)
    except Exception:
        return value


def _occurrence_epoch_ms(start: datetime, tz_name: str) -> int:
    aware = start.replace(tzinfo=ZoneInfo(tz_name))
    return int(aware.timestamp() * 1000)


def expand(event: CalendarEvent,
           range_start: datetime,
           range_end: datetime,
           target_tz: Optional[str] = None) -> List[CalendarEvent]:
    """
    recurring base event -> occurrences whose start lies in [range_start, range_end]
    (range given as wall-clock time in the target zone)
    """
    rule = event.recurrence
    if rule is None:
        return []
    target = target_tz or event.timezone
    duration = event.end - event.start
    exceptions = set(rule.exceptions)

    # Zone shifts can move an occurrence across midnight, so widen by a day
    scope = (range_start.date() - timedelta(days=1), range_end.date() + timedelta(days=1))
    results: List[CalendarEvent] = []
    for cur in collect_recurrence_dates(rule, event.start.date(), scope=scope):
        if cur in exceptions:
            continue
        occ_start = datetime.combine(cur, event.start.time())
        occ_end = occ_start + duration
        start_in_target = convert_timezone(occ_start, event.timezone, target)
        end_in_target = convert_timezone(occ_end, event.timezone, target)
        if start_in_target < range_start or start_in_target > range_end:
            continue
        epoch = _occurrence_epoch_ms(occ_start, event.timezone)
        results.append(event.model_copy(update={
            "id": f"{event.id}_{epoch}",
            "start": start_in_target,
            "end": end_in_target,
            "timezone": target,
            "recurrence": None,
            "original_event": event.id,
        }))
    return results


def occurrence_date(occurrence: CalendarEvent, base: CalendarEvent) -> date:
    """Series-local date of an occurrence, used for exceptions and truncation."""
    return convert_timezone(occurrence.start, occurrence.timezone, base.timezone).date()


def apply_recurring_delete(event: CalendarEvent,
                           mode: DeleteMode,
                           on_date: Optional[date] = None) -> Optional[CalendarEvent]:
    """Returns the updated base event, or None when the whole series goes away."""
    rule = event.recurrence
    if rule is None or mode == "all":
        return None
    if on_date is None:
        raise ValueError(f"delete mode '{mode}' requires an occurrence date")

    if mode == "single":
        new_rule = rule.model_copy(update={"exceptions": sorted(set(rule.exceptions) | {on_date})})
        return event.model_copy(update={"recurrence": new_rule})

    if mode == "following":
        until = on_date - timedelta(days=1)
        if until < event.start.date():
            return None
        new_rule = rule.model_copy(update={"end": UntilEnd(until=until)})
        return event.model_copy(update={"recurrence": new_rule})

    raise ValueError(f"unknown delete mode: {mode}")


# -------------------------
# RRULE (RFC 5545) 序列化
# -------------------------
def _format_rrule_until(until_date: date,
                        start: datetime,
                        tz_name: str,
                        all_day: bool) -> str:
    if all_day:
        return until_date.strftime("%Y%m%d")
    local_dt = datetime.combine(until_date, start.time()).replace(tzinfo=ZoneInfo(tz_name))
    return local_dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def build_rrule(rule: RecurrenceRule,
                start: datetime,
                tz_name: str,
                all_day: bool = False) -> str:
    parts = [f"FREQ={rule.freq.upper()}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.by_weekday:
        parts.append("BYDAY=" + ",".join(_RRULE_INDEX_TO_WEEKDAY[w] for w in rule.by_weekday))
    if rule.by_month_day:
        parts.append("BYMONTHDAY=" + ",".join(str(d) for d in rule.by_month_day))
    if rule.by_month:
        parts.append("BYMONTH=" + ",".join(str(m) for m in rule.by_month))
    if isinstance(rule.end, UntilEnd):
        parts.append("UNTIL=" + _format_rrule_until(rule.end.until, start, tz_name, all_day))
    elif isinstance(rule.end, CountEnd):
        parts.append(f"COUNT={rule.end.count}")
    return ";".join(parts)


def _parse_rrule_until(raw: str, tz_name: str) -> Optional[date]:
    try:
        if "T" not in raw:
            return datetime.strptime(raw[:8], "%Y%m%d").date()
        if raw.endswith("Z"):
            utc_dt = datetime.strptime(raw, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
            return utc_dt.astimezone(ZoneInfo(tz_name)).date()
        return datetime.strptime(raw[:15], "%Y%m%dT%H%M%S").date()
    except Exception:
        return None


def _split_int_list(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    out: List[int] = []
    for token in raw.split(","):
        try:
            out.append(int(token))
        except Exception:
            continue
    return out or None


def parse_rrule(rrule: Any, tz_name: str = "UTC") -> Optional[RecurrenceRule]:
    if not isinstance(rrule, str):
        return None
    raw = rrule.strip()
    if raw.upper().startswith("RRULE:"):
        raw = raw.split(":", 1)[1].strip()
    if not raw:
        return None

    values: Dict[str, str] = {}
    for part in [p.strip() for p in raw.split(";") if p.strip()]:
        if "=" not in part:
            return None
        key, val = part.split("=", 1)
        values[key.strip().upper()] = val.strip().upper()

    freq = values.get("FREQ")
    if freq not in _RRULE_FREQS:
        return None
    if "COUNT" in values and "UNTIL" in values:
        return None

    weekdays: List[int] = []
    for token in (values.get("BYDAY") or "").split(","):
        match = re.match(r"^[+-]?\d?(MO|TU|WE|TH|FR|SA|SU)$", token.strip())
        if match:
            weekdays.append(_RRULE_WEEKDAY_TO_INDEX[match.group(1)])

    end: Any = NeverEnd()
    if "UNTIL" in values:
        until = _parse_rrule_until(values["UNTIL"], tz_name)
        if until is None:
            return None
        end = UntilEnd(until=until)
    elif "COUNT" in values:
        try:
            end = CountEnd(count=int(values["COUNT"]))
        except Exception:
            return None

    try:
        return RecurrenceRule(
            freq=freq.lower(),
            interval=int(values.get("INTERVAL") or 1),
            by_weekday=weekdays or None,
            by_month_day=_split_int_list(values.get("BYMONTHDAY")),
            by_month=_split_int_list(values.get("BYMONTH")),
            end=end,
        )
    except Exception:
        return None
