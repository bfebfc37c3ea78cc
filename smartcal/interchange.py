from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, get_args
import csv
import io

from pydantic import ValidationError
from zoneinfo import ZoneInfo

from .config import DEFAULT_TIMEZONE
from .models import CalendarEvent, EventCategory, ImportResult
from .recurrence import build_rrule, parse_rrule
from .state import new_event_id
from .utils import _log_debug, parse_hhmm, parse_iso_date

CSV_COLUMNS = [
    "Title",
    "Description",
    "Start Date",
    "Start Time",
    "End Date",
    "End Time",
    "All Day",
    "Location",
    "Category",
    "Timezone",
    "Priority",
    "Color",
    "Recurrence",
    "Exceptions",
]

ICS_PRODID = "-//smartcal//smartcal 0.1//ZH"
_ICS_PRIORITY = {"high": 1, "medium": 5, "low": 9}
_ICS_LINE_LIMIT = 75


def _inclusive_end_date(event: CalendarEvent) -> date:
    # All-day ends are stored exclusive (next midnight)
    if event.all_day and event.end.time() == datetime.min.time():
        return (event.end - timedelta(days=1)).date()
    return event.end.date()


# -------------------------
# CSV
# -------------------------
def export_csv(events: List[CalendarEvent]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for ev in events:
        writer.writerow([
            ev.title,
            ev.description or "",
            ev.start.strftime("%Y-%m-%d"),
            "" if ev.all_day else ev.start.strftime("%H:%M"),
            _inclusive_end_date(ev).strftime("%Y-%m-%d"),
            "" if ev.all_day else ev.end.strftime("%H:%M"),
            "TRUE" if ev.all_day else "FALSE",
            ev.location or "",
            ev.category,
            ev.timezone,
            ev.priority,
            ev.color or "",
            build_rrule(ev.recurrence, ev.start, ev.timezone, ev.all_day) if ev.recurrence else "",
            ";".join(d.isoformat() for d in ev.recurrence.exceptions) if ev.recurrence else "",
        ])
    return buf.getvalue()


def _text_or_none(value: Optional[str]) -> Optional[str]:
    """Keeps surrounding whitespace; blank cells become None."""
    if value is None or not value.strip():
        return None
    return value


def _csv_row_to_event(row: Dict[str, str]) -> CalendarEvent:
    title = row.get("Title") or ""
    if not title.strip():
        raise ValueError("missing Title")
    start_day = parse_iso_date(row.get("Start Date"))
    if start_day is None:
        raise ValueError(f"invalid Start Date: {row.get('Start Date')!r}")
    end_day = parse_iso_date(row.get("End Date")) or start_day
    all_day = (row.get("All Day") or "").strip().upper() == "TRUE"
    tz_name = (row.get("Timezone") or "").strip() or DEFAULT_TIMEZONE

    if all_day:
        start = datetime.combine(start_day, datetime.min.time())
        end = datetime.combine(end_day + timedelta(days=1), datetime.min.time())
    else:
        start_clock = parse_hhmm(row.get("Start Time"))
        if start_clock is None:
            raise ValueError(f"invalid Start Time: {row.get('Start Time')!r}")
        end_clock = parse_hhmm(row.get("End Time"))
        start = datetime.combine(start_day, start_clock)
        end = datetime.combine(end_day, end_clock) if end_clock else start + timedelta(hours=1)

    recurrence = None
    raw_rule = (row.get("Recurrence") or "").strip()
    if raw_rule:
        recurrence = parse_rrule(raw_rule, tz_name)
        if recurrence is None:
            raise ValueError(f"invalid Recurrence: {raw_rule!r}")
        exceptions = [parse_iso_date(d) for d in (row.get("Exceptions") or "").split(";") if d.strip()]
        recurrence = recurrence.model_copy(update={"exceptions": sorted({d for d in exceptions if d})})

    payload = {
        "id": new_event_id(),
        "title": title,
        "description": _text_or_none(row.get("Description")),
        "start": start,
        "end": end,
        "all_day": all_day,
        "location": _text_or_none(row.get("Location")),
        "category": (row.get("Category") or "").strip().lower() or "other",
        "timezone": tz_name,
        "recurrence": recurrence,
    }
    if (row.get("Priority") or "").strip():
        payload["priority"] = row["Priority"].strip().lower()
    if (row.get("Color") or "").strip():
        payload["color"] = row["Color"].strip()
    return CalendarEvent.model_validate(payload)


def import_csv(text: str) -> ImportResult:
    result = ImportResult()
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    # header is line 1
    for line_no, row in enumerate(reader, start=2):
        try:
            result.events.append(_csv_row_to_event(row))
            result.success += 1
        except (ValueError, ValidationError) as exc:
            result.failed += 1
            result.errors.append(f"第{line_no}行: {exc}")
    _log_debug(f"[INTERCHANGE] csv import success={result.success} failed={result.failed}")
    return result


# -------------------------
# ICS
# -------------------------
def escape_ics_text(value: str) -> str:
    return (value.replace("\\", "\\\\")
            .replace(";", "\\;")
            .replace(",", "\\,")
            .replace("\r\n", "\\n")
            .replace("\n", "\\n"))


def unescape_ics_text(value: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            out.append("\n" if nxt in ("n", "N") else nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def fold_ics_line(line: str) -> List[str]:
    """Split a content line into chunks of at most 75 octets (RFC 5545 3.1)."""
    chunks: List[str] = []
    current = ""
    current_len = 0
    for ch in line:
        size = len(ch.encode("utf-8"))
        if current_len + size > _ICS_LINE_LIMIT:
            chunks.append(current)
            current = " "
            current_len = 1
        current += ch
        current_len += size
    chunks.append(current)
    return chunks


def _ics_datetime(value: datetime, tz_name: str, all_day: bool) -> Tuple[str, str]:
    if all_day:
        return ";VALUE=DATE", value.strftime("%Y%m%d")
    return f";TZID={tz_name}", value.strftime("%Y%m%dT%H%M%S")


def export_ics(events: List[CalendarEvent], now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{ICS_PRODID}",
        "CALSCALE:GREGORIAN",
    ]
    for ev in events:
        lines.append("BEGIN:VEVENT")
        lines.append(f"UID:{ev.id}@smartcal")
        lines.append(f"DTSTAMP:{stamp}")
        params, value = _ics_datetime(ev.start, ev.timezone, ev.all_day)
        lines.append(f"DTSTART{params}:{value}")
        params, value = _ics_datetime(ev.end, ev.timezone, ev.all_day)
        lines.append(f"DTEND{params}:{value}")
        lines.append(f"SUMMARY:{escape_ics_text(ev.title)}")
        if ev.description:
            lines.append(f"DESCRIPTION:{escape_ics_text(ev.description)}")
        if ev.location:
            lines.append(f"LOCATION:{escape_ics_text(ev.location)}")
        lines.append(f"CATEGORIES:{ev.category.upper()}")
        lines.append(f"PRIORITY:{_ICS_PRIORITY.get(ev.priority, 5)}")
        if ev.color:
            lines.append(f"COLOR:{ev.color}")
        if ev.recurrence is not None:
            lines.append("RRULE:" + build_rrule(ev.recurrence, ev.start, ev.timezone, ev.all_day))
            for ex in ev.recurrence.exceptions:
                ex_start = datetime.combine(ex, ev.start.time())
                params, value = _ics_datetime(ex_start, ev.timezone, ev.all_day)
                lines.append(f"EXDATE{params}:{value}")
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")

    folded: List[str] = []
    for line in lines:
        folded.extend(fold_ics_line(line))
    return "\r\n".join(folded) + "\r\n"


def _unfold_ics(text: str) -> List[str]:
    lines: List[str] = []
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw:
            lines.append(raw)
    return lines


def _split_property(line: str) -> Tuple[str, Dict[str, str], str]:
    head, _, value = line.partition(":")
    parts = head.split(";")
    params: Dict[str, str] = {}
    for part in parts[1:]:
        key, _, val = part.partition("=")
        params[key.strip().upper()] = val.strip().strip('"')
    return parts[0].strip().upper(), params, value


def _zone_name(tzid: Optional[str], default_tz: str) -> str:
    if tzid:
        try:
            ZoneInfo(tzid)
            return tzid
        except Exception:
            _log_debug(f"[INTERCHANGE] unknown TZID {tzid}, using {default_tz}")
    return default_tz


def _parse_ics_datetime(value: str, params: Dict[str, str], default_tz: str) -> Tuple[datetime, bool, str]:
    """(naive wall-clock datetime, is_date, zone name)"""
    raw = value.strip()
    tz_name = _zone_name(params.get("TZID"), default_tz)
    if params.get("VALUE") == "DATE" or len(raw) == 8:
        return datetime.strptime(raw[:8], "%Y%m%d"), True, tz_name
    if raw.endswith("Z"):
        utc_dt = datetime.strptime(raw, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
        return utc_dt.astimezone(ZoneInfo(tz_name)).replace(tzinfo=None), False, tz_name
    return datetime.strptime(raw[:15], "%Y%m%dT%H%M%S"), False, tz_name


def _vevent_to_event(props: List[Tuple[str, Dict[str, str], str]], default_tz: str) -> CalendarEvent:
    payload: Dict[str, object] = {"id": new_event_id()}
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day = False
    tz_name = default_tz
    rrule_raw: Optional[str] = None
    exdates: List[date] = []

    for name, params, value in props:
        if name == "DTSTART":
            start, all_day, tz_name = _parse_ics_datetime(value, params, default_tz)
        elif name == "DTEND":
            end, _, _ = _parse_ics_datetime(value, params, tz_name)
        elif name == "SUMMARY":
            payload["title"] = unescape_ics_text(value).strip()
        elif name == "DESCRIPTION":
            payload["description"] = unescape_ics_text(value) or None
        elif name == "LOCATION":
            payload["location"] = unescape_ics_text(value) or None
        elif name == "CATEGORIES":
            payload["category"] = unescape_ics_text(value).split(",")[0].strip().lower() or "other"
        elif name == "PRIORITY":
            try:
                level = int(value)
            except ValueError:
                continue
            if level:
                payload["priority"] = "high" if level <= 4 else ("medium" if level == 5 else "low")
        elif name == "COLOR":
            payload["color"] = value.strip() or None
        elif name == "RRULE":
            rrule_raw = value
        elif name == "EXDATE":
            for piece in value.split(","):
                try:
                    ex_dt, _, _ = _parse_ics_datetime(piece, params, tz_name)
                except ValueError:
                    continue
                exdates.append(ex_dt.date())

    if start is None:
        raise ValueError("VEVENT without DTSTART")
    if end is None:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    payload.update({"start": start, "end": end, "all_day": all_day, "timezone": tz_name})
    if payload.get("category") not in get_args(EventCategory):
        payload["category"] = "other"
    if rrule_raw:
        rule = parse_rrule(rrule_raw, tz_name)
        if rule is None:
            raise ValueError(f"invalid RRULE: {rrule_raw}")
        payload["recurrence"] = rule.model_copy(update={"exceptions": sorted(set(exdates))})
    return CalendarEvent.model_validate(payload)


def import_ics(text: str, default_tz: str = DEFAULT_TIMEZONE) -> ImportResult:
    result = ImportResult()
    current: Optional[List[Tuple[str, Dict[str, str], str]]] = None
    index = 0
    for line in _unfold_ics(text):
        name, params, value = _split_property(line)
        if name == "BEGIN" and value.strip().upper() == "VEVENT":
            current = []
            index += 1
            continue
        if name == "END" and value.strip().upper() == "VEVENT":
            if current is None:
                continue
            try:
                result.events.append(_vevent_to_event(current, default_tz))
                result.success += 1
            except (ValueError, ValidationError) as exc:
                result.failed += 1
                result.errors.append(f"第{index}个事件: {exc}")
            current = None
            continue
        if current is not None:
            current.append((name, params, value))
    _log_debug(f"[INTERCHANGE] ics import success={result.success} failed={result.failed}")
    return result
