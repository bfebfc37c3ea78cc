"""
Tests for recurrence expansion, recurring deletes and RRULE serialization
"""
from datetime import date, datetime, timedelta

import pytest

from conftest import TZ, build_event
from smartcal.models import CountEnd, NeverEnd, RecurrenceRule, UntilEnd
from smartcal.recurrence import (
    apply_recurring_delete,
    build_rrule,
    collect_recurrence_dates,
    convert_timezone,
    expand,
    occurrence_date,
    parse_rrule,
)


class TestCollectRecurrenceDates:
    """Occurrence dates produced by each frequency"""

    def test_daily_count(self):
        rule = RecurrenceRule(freq="daily", end=CountEnd(count=3))
        assert collect_recurrence_dates(rule, date(2026, 3, 2)) == [
            date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4)
        ]

    def test_daily_until_is_inclusive(self):
        rule = RecurrenceRule(freq="daily", end=UntilEnd(until=date(2026, 3, 5)))
        assert len(collect_recurrence_dates(rule, date(2026, 3, 2))) == 4

    def test_weekly_multiple_weekdays(self):
        rule = RecurrenceRule(freq="weekly", by_weekday=[0, 2], end=CountEnd(count=4))
        assert collect_recurrence_dates(rule, date(2026, 3, 2)) == [
            date(2026, 3, 2), date(2026, 3, 4), date(2026, 3, 9), date(2026, 3, 11)
        ]

    def test_weekly_interval(self):
        rule = RecurrenceRule(freq="weekly", interval=2, end=CountEnd(count=3))
        assert collect_recurrence_dates(rule, date(2026, 3, 2)) == [
            date(2026, 3, 2), date(2026, 3, 16), date(2026, 3, 30)
        ]

    def test_monthly_skips_months_without_the_day(self):
        rule = RecurrenceRule(freq="monthly", end=CountEnd(count=3))
        assert collect_recurrence_dates(rule, date(2026, 1, 31)) == [
            date(2026, 1, 31), date(2026, 3, 31), date(2026, 5, 31)
        ]

    def test_monthly_last_day(self):
        rule = RecurrenceRule(freq="monthly", by_month_day=[-1], end=CountEnd(count=3))
        assert collect_recurrence_dates(rule, date(2026, 1, 31)) == [
            date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31)
        ]

    def test_yearly(self):
        rule = RecurrenceRule(freq="yearly", end=CountEnd(count=2))
        assert collect_recurrence_dates(rule, date(2026, 5, 1)) == [
            date(2026, 5, 1), date(2027, 5, 1)
        ]

    def test_count_measured_from_series_start(self):
        rule = RecurrenceRule(freq="daily", end=CountEnd(count=5))
        scoped = collect_recurrence_dates(rule, date(2026, 3, 1),
                                          scope=(date(2026, 3, 4), date(2026, 3, 31)))
        assert scoped == [date(2026, 3, 4), date(2026, 3, 5)]


class TestExpand:
    """Expansion of a stored series into occurrences"""

    def _series(self, **rule_fields):
        rule = RecurrenceRule(freq="weekly", by_weekday=[0], **rule_fields)
        return build_event("周会", datetime(2026, 3, 2, 9, 0), recurrence=rule)

    def test_occurrences_in_range(self):
        base = self._series()
        items = expand(base, datetime(2026, 3, 1), datetime(2026, 3, 31, 23, 59))
        assert [ev.start.day for ev in items] == [2, 9, 16, 23, 30]
        first = items[0]
        assert first.original_event == base.id
        assert first.base_id == base.id
        assert first.is_occurrence
        assert first.recurrence is None
        assert first.id.startswith(f"{base.id}_")
        assert first.end == datetime(2026, 3, 2, 10, 0)

    def test_exceptions_are_skipped(self):
        base = self._series(exceptions=[date(2026, 3, 9)])
        items = expand(base, datetime(2026, 3, 1), datetime(2026, 3, 31, 23, 59))
        assert date(2026, 3, 9) not in [ev.start.date() for ev in items]
        assert len(items) == 4

    def test_target_timezone(self):
        base = self._series()
        items = expand(base, datetime(2026, 3, 2), datetime(2026, 3, 2, 23, 59), "UTC")
        assert len(items) == 1
        assert items[0].start == datetime(2026, 3, 2, 1, 0)
        assert items[0].timezone == "UTC"
        assert occurrence_date(items[0], base) == date(2026, 3, 2)

    def test_weekly_count_over_wider_window(self):
        rule = RecurrenceRule(freq="weekly", end=CountEnd(count=5))
        base = build_event("周一例会", datetime(2026, 3, 2, 10, 0), recurrence=rule)
        items = expand(base, datetime(2026, 3, 2), datetime(2026, 5, 10, 23, 59))
        assert len(items) == 5
        starts = [ev.start for ev in items]
        assert all(later - earlier == timedelta(days=7) for earlier, later in zip(starts, starts[1:]))
        assert all(ev.end - ev.start == timedelta(hours=1) for ev in items)
        assert all(ev.start.weekday() == 0 and ev.start.hour == 10 for ev in items)

    def test_open_ended_series_years_after_start(self):
        rule = RecurrenceRule(freq="weekly", by_weekday=[0, 1, 2, 3, 4])
        base = build_event("站会", datetime(2024, 6, 3, 9, 30), recurrence=rule)
        items = expand(base, datetime(2026, 3, 9), datetime(2026, 3, 15, 23, 59))
        assert [ev.start.day for ev in items] == [9, 10, 11, 12, 13]

    def test_open_ended_daily_series_far_from_start(self):
        rule = RecurrenceRule(freq="daily", interval=3)
        base = build_event("吃药", datetime(2020, 1, 1, 8, 0), recurrence=rule)
        items = expand(base, datetime(2026, 3, 9), datetime(2026, 3, 15, 23, 59))
        assert [ev.start.day for ev in items] == [9, 12, 15]
        assert all((ev.start.date() - date(2020, 1, 1)).days % 3 == 0 for ev in items)

    def test_non_recurring_event_expands_to_nothing(self):
        single = build_event("单次", datetime(2026, 3, 2, 9, 0))
        assert expand(single, datetime(2026, 3, 1), datetime(2026, 3, 31)) == []

    def test_convert_timezone(self):
        assert convert_timezone(datetime(2026, 3, 2, 9, 0), TZ, "Asia/Tokyo") == datetime(2026, 3, 2, 10, 0)
        assert convert_timezone(datetime(2026, 3, 2, 9, 0), TZ, TZ) == datetime(2026, 3, 2, 9, 0)


class TestApplyRecurringDelete:
    """single / following / all deletes on a series"""

    def _series(self):
        rule = RecurrenceRule(freq="daily")
        return build_event("晨跑", datetime(2026, 3, 2, 7, 0), recurrence=rule)

    def test_single_adds_exception(self):
        updated = apply_recurring_delete(self._series(), "single", date(2026, 3, 5))
        assert updated.recurrence.exceptions == [date(2026, 3, 5)]

    def test_following_truncates_series(self):
        updated = apply_recurring_delete(self._series(), "following", date(2026, 3, 5))
        assert updated.recurrence.end == UntilEnd(until=date(2026, 3, 4))

    def test_following_from_series_start_removes_series(self):
        assert apply_recurring_delete(self._series(), "following", date(2026, 3, 2)) is None

    def test_all_removes_series(self):
        assert apply_recurring_delete(self._series(), "all") is None

    def test_single_requires_date(self):
        with pytest.raises(ValueError):
            apply_recurring_delete(self._series(), "single", None)


class TestRRule:
    """RFC 5545 RRULE core text"""

    def test_build_weekly(self):
        rule = RecurrenceRule(freq="weekly", by_weekday=[0, 2], end=CountEnd(count=5))
        assert build_rrule(rule, datetime(2026, 3, 2, 9, 0), TZ) == "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=5"

    def test_build_until_is_utc(self):
        rule = RecurrenceRule(freq="daily", interval=2, end=UntilEnd(until=date(2026, 3, 31)))
        text = build_rrule(rule, datetime(2026, 3, 2, 9, 0), TZ)
        assert text == "FREQ=DAILY;INTERVAL=2;UNTIL=20260331T010000Z"

    def test_build_until_all_day(self):
        rule = RecurrenceRule(freq="daily", end=UntilEnd(until=date(2026, 3, 31)))
        assert build_rrule(rule, datetime(2026, 3, 2), TZ, all_day=True) == "FREQ=DAILY;UNTIL=20260331"

    def test_parse_with_prefix(self):
        rule = parse_rrule("RRULE:FREQ=MONTHLY;BYMONTHDAY=15;UNTIL=20261231", TZ)
        assert rule.freq == "monthly"
        assert rule.by_month_day == [15]
        assert rule.end == UntilEnd(until=date(2026, 12, 31))

    def test_parse_utc_until_in_zone(self):
        rule = parse_rrule("FREQ=DAILY;UNTIL=20260331T010000Z", TZ)
        assert rule.end == UntilEnd(until=date(2026, 3, 31))

    def test_parse_defaults_to_never(self):
        rule = parse_rrule("FREQ=WEEKLY;BYDAY=TU,TH")
        assert rule.by_weekday == [1, 3]
        assert isinstance(rule.end, NeverEnd)

    @pytest.mark.parametrize("text", [
        "FREQ=HOURLY",
        "FREQ=DAILY;COUNT=3;UNTIL=20260101",
        "garbage",
        "",
        None,
    ])
    def test_parse_rejects_invalid(self, text):
        assert parse_rrule(text) is None
