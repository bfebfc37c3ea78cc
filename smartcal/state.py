from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
import asyncio
import json
import os
import pathlib
import uuid

from pydantic import ValidationError

from .config import (
    DEFAULT_TIMEZONE,
    EVENTS_DATA_FILE,
    MATCH_LOOKBACK_DAYS,
    MAX_RECURRENCE_EXPANSION_DAYS,
)
from .models import CalendarEvent
from .recurrence import DeleteMode, apply_recurring_delete, convert_timezone, expand
from .utils import _log_debug, _now_iso_minute


class StoreError(Exception):
    """Raised when the event store cannot complete a mutation."""


class EventNotFoundError(StoreError):
    def __init__(self, event_id: str):
        super().__init__(f"event not found: {event_id}")
        self.event_id = event_id


class VersionConflictError(StoreError):
    def __init__(self, event_id: str, expected: int, actual: int):
        super().__init__(
            f"event {event_id} changed (expected version {expected}, found {actual})")
        self.event_id = event_id
        self.expected = expected
        self.actual = actual


def new_event_id() -> str:
    return uuid.uuid4().hex[:12]


class EventStore:
    """In-memory event store with JSON persistence.

    Every mutation runs under a single asyncio lock and bumps the event's
    `version`; callers pass `expected_version` to turn a write into a
    compare-and-swap. Reads do not take the lock.
    """

    def __init__(self, data_file: Optional[pathlib.Path] = None):
        self.data_file = data_file
        self._events: Dict[str, CalendarEvent] = {}
        self._lock = asyncio.Lock()

    # -------------------------
    # persistence
    # -------------------------
    def _serialize_events_payload(self) -> Dict[str, Any]:
        return {
            "version": 1,
            "events": [e.model_dump(mode="json") for e in self._events.values()],
        }

    def _save_events_to_disk(self) -> None:
        if self.data_file is None:
            return
        payload = json.dumps(self._serialize_events_payload(), ensure_ascii=False, indent=2)
        tmp_path = self.data_file.with_name(self.data_file.name + ".tmp")
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self.data_file)
        except OSError as exc:
            _log_debug(f"[EVENT STORE] save failed: {exc}")
            raise StoreError(f"failed to persist events: {exc}") from exc

    def load(self) -> None:
        self._events.clear()
        if self.data_file is None or not self.data_file.exists():
            return
        try:
            data = json.loads(self.data_file.read_text(encoding="utf-8"))
        except Exception as exc:
            _log_debug(f"[EVENT STORE] load failed: {exc}")
            return

        raw_list = data.get("events") if isinstance(data, dict) else data
        if not isinstance(raw_list, list):
            return
        for item in raw_list:
            if not isinstance(item, dict):
                continue
            try:
                ev = CalendarEvent.model_validate(item)
            except ValidationError as exc:
                _log_debug(f"[EVENT STORE] skipped invalid event {item.get('id')}: {exc}")
                continue
            self._events[ev.id] = ev
        _log_debug(f"[EVENT STORE] loaded {len(self._events)} events")

    def _commit(self, previous: Dict[str, CalendarEvent]) -> None:
        """Persist the current state, restoring `previous` when the write fails."""
        try:
            self._save_events_to_disk()
        except StoreError:
            self._events = previous
            raise

    # -------------------------
    # reads
    # -------------------------
    def get_by_id(self, event_id: str) -> Optional[CalendarEvent]:
        return self._events.get(event_id)

    def all_events(self) -> List[CalendarEvent]:
        return list(self._events.values())

    def list(self,
             range_start: datetime,
             range_end: datetime,
             timezone: Optional[str] = None) -> List[CalendarEvent]:
        """Events overlapping [range_start, range_end], recurrences expanded.

        The range is wall-clock time in `timezone`; every returned event is
        expressed in that zone.
        """
        target = timezone or DEFAULT_TIMEZONE
        items: List[CalendarEvent] = []
        for ev in self._events.values():
            if ev.recurrence is not None:
                items.extend(expand(ev, range_start, range_end, target))
                continue
            start = convert_timezone(ev.start, ev.timezone, target)
            end = convert_timezone(ev.end, ev.timezone, target)
            if end <= range_start or start > range_end:
                continue
            if target != ev.timezone:
                ev = ev.model_copy(update={"start": start, "end": end, "timezone": target})
            items.append(ev)
        items.sort(key=lambda e: (e.start, e.title))
        return items

    # -------------------------
    # writes
    # -------------------------
    async def create(self, event: CalendarEvent) -> CalendarEvent:
        async with self._lock:
            previous = dict(self._events)
            stored = event.model_copy(update={
                "id": event.id or new_event_id(),
                "version": 1,
                "created_at": event.created_at or _now_iso_minute(),
                "original_event": None,
            })
            self._events[stored.id] = stored
            self._commit(previous)
            _log_debug(f"[EVENT STORE] created {stored.id} '{stored.title}'")
            return stored

    async def update(self,
                     event_id: str,
                     patch: Dict[str, Any],
                     expected_version: Optional[int] = None) -> CalendarEvent:
        async with self._lock:
            current = self._check_version(event_id, expected_version)
            merged = current.model_dump()
            merged.update({k: v for k, v in patch.items() if k not in ("id", "version")})
            if "category" in patch and "color" not in patch:
                merged["color"] = None
            merged["version"] = current.version + 1
            # Re-validate so the end > start invariant holds after every update
            updated = CalendarEvent.model_validate(merged)
            previous = dict(self._events)
            self._events[event_id] = updated
            self._commit(previous)
            _log_debug(f"[EVENT STORE] updated {event_id} -> v{updated.version}")
            return updated

    async def delete(self, event_id: str, expected_version: Optional[int] = None) -> CalendarEvent:
        async with self._lock:
            current = self._check_version(event_id, expected_version)
            previous = dict(self._events)
            del self._events[event_id]
            self._commit(previous)
            _log_debug(f"[EVENT STORE] deleted {event_id}")
            return current

    async def delete_many(self, event_ids: List[str]) -> List[str]:
        async with self._lock:
            previous = dict(self._events)
            deleted = [eid for eid in event_ids if self._events.pop(eid, None) is not None]
            if deleted:
                self._commit(previous)
            return sorted(deleted)

    async def add_exception(self,
                            event_id: str,
                            on_date: date,
                            expected_version: Optional[int] = None) -> CalendarEvent:
        return await self.delete_recurring(event_id, "single", on_date, expected_version)

    async def delete_recurring(self,
                               event_id: str,
                               mode: DeleteMode,
                               on_date: Optional[date] = None,
                               expected_version: Optional[int] = None) -> Optional[CalendarEvent]:
        """Apply a single/following/all delete to a recurring series.

        Returns the updated base event, or None when the series was removed.
        """
        async with self._lock:
            current = self._check_version(event_id, expected_version)
            updated = apply_recurring_delete(current, mode, on_date)
            previous = dict(self._events)
            if updated is None:
                del self._events[event_id]
            else:
                updated = updated.model_copy(update={"version": current.version + 1})
                self._events[event_id] = updated
            self._commit(previous)
            _log_debug(f"[EVENT STORE] recurring delete {event_id} mode={mode} date={on_date}")
            return updated

    def _check_version(self, event_id: str, expected_version: Optional[int]) -> CalendarEvent:
        current = self._events.get(event_id)
        if current is None:
            raise EventNotFoundError(event_id)
        if expected_version is not None and current.version != expected_version:
            raise VersionConflictError(event_id, expected_version, current.version)
        return current


def default_list_window(today: date) -> tuple[datetime, datetime]:
    start = datetime(today.year, today.month, today.day) - timedelta(days=MATCH_LOOKBACK_DAYS)
    return start, start + timedelta(days=MATCH_LOOKBACK_DAYS + MAX_RECURRENCE_EXPANSION_DAYS)


event_store = EventStore(EVENTS_DATA_FILE)
