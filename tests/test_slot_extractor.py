"""
Tests for entity extraction, date/time normalization and draft building
"""
from datetime import date, datetime, time

import pytest

from conftest import NOW
from smartcal.agent.normalizer import (
    coerce_local_datetime,
    detect_recurrence,
    parse_duration_minutes,
    resolve_clock_time,
    resolve_event_date,
    resolve_timezone,
    resolve_weekday,
)
from smartcal.agent.slot_extractor import (
    build_event_draft,
    build_update_patch,
    clean_create_title,
    extract_category,
    extract_date,
    extract_entities,
    extract_location,
    extract_time,
    extract_title,
    split_update_message,
)
from smartcal.models import CountEnd

TODAY = NOW.date()


class TestExtractors:
    """Single-entity extractors"""

    def test_title_strips_noise(self):
        assert extract_title("删除明天的团队会议") == "团队会议"

    def test_title_from_quotes(self):
        assert extract_title('创建"周报复盘"') == "周报复盘"

    def test_title_fallback_to_cleaned_text(self):
        assert extract_title("明天健身") == "健身"

    def test_date_patterns(self):
        assert extract_date("3.15开会") == "3.15"
        assert extract_date("3月15日开会") == "3月15日"
        assert extract_date("下周开会") == "下周"
        assert extract_date("开会") is None

    def test_time_patterns(self):
        assert extract_time("晚上8点半吃饭") == "8点"
        assert extract_time("晚上吃饭") == "晚上"
        assert extract_time("15:30开会") == "15:30"

    def test_location_window(self):
        assert extract_location("明天在图书馆 自习") == "图书馆"
        assert extract_location("开会") is None

    def test_entities_bundle(self):
        entities = extract_entities("删除明天的团队会议")
        assert entities.event_title == "团队会议"
        assert entities.date == "明天"
        assert entities.location is None

    @pytest.mark.parametrize("text,category", [
        ("项目会议", "work"),
        ("团队会议", "meeting"),
        ("个人安排", "personal"),
        ("健康体检", "health"),
        ("吃饭", "work"),
    ])
    def test_category(self, text, category):
        assert extract_category(text) == category

    def test_clean_create_title(self):
        assert clean_create_title("开项目会议") == "项目会议"
        assert clean_create_title("每周一开周会") == "周会"
        assert clean_create_title("") is None


class TestNormalizer:
    """Relative dates, clock times and durations"""

    @pytest.mark.parametrize("date_text,message,expected", [
        ("明天", "明天开会", date(2026, 3, 11)),
        ("后天", "后天开会", date(2026, 3, 12)),
        ("周三", "下周三开会", date(2026, 3, 18)),
        ("周五", "本周五开会", date(2026, 3, 13)),
        ("周一", "周一开会", date(2026, 3, 16)),
        ("周二", "周二开会", date(2026, 3, 10)),
        ("3.20", "3.20开会", date(2026, 3, 20)),
        ("3月5日", "3月5日开会", date(2027, 3, 5)),
    ])
    def test_resolve_event_date(self, date_text, message, expected):
        assert resolve_event_date(date_text, message, TODAY) == expected

    def test_unresolvable_date(self):
        assert resolve_event_date(None, "开会", TODAY) is None

    @pytest.mark.parametrize("message", ["查看本周日程", "下周日历", "这周日常安排"])
    def test_week_words_are_not_sunday(self, message):
        assert resolve_weekday(message, TODAY) is None
        assert extract_date(message) != "周日"

    def test_sunday_still_resolves(self):
        assert resolve_weekday("本周日开会", TODAY) == date(2026, 3, 15)
        assert resolve_weekday("星期天的聚会", TODAY) == date(2026, 3, 15)

    @pytest.mark.parametrize("message,expected", [
        ("下午3点", time(15, 0)),
        ("晚上8点半", time(20, 30)),
        ("上午9点15分", time(9, 15)),
        ("15:30", time(15, 30)),
        ("下午", time(14, 0)),
        ("中午", time(12, 0)),
    ])
    def test_resolve_clock_time(self, message, expected):
        assert resolve_clock_time(None, message) == expected

    def test_no_clock_time(self):
        assert resolve_clock_time(None, "开会") is None

    @pytest.mark.parametrize("message,expected", [
        ("开会两个小时", 120),
        ("1个半小时", 90),
        ("半小时", 30),
        ("45分钟", 45),
        ("开会", None),
    ])
    def test_duration(self, message, expected):
        assert parse_duration_minutes(message) == expected

    def test_recurrence_phrases(self):
        weekly = detect_recurrence("每周一三开会", TODAY)
        assert weekly.freq == "weekly"
        assert weekly.by_weekday == [0, 2]

        workdays = detect_recurrence("工作日站会", TODAY)
        assert workdays.by_weekday == [0, 1, 2, 3, 4]

        monthly = detect_recurrence("每月15号交报告", TODAY)
        assert monthly.freq == "monthly"
        assert monthly.by_month_day == [15]

        daily = detect_recurrence("每天跑步共5次", TODAY)
        assert daily.end == CountEnd(count=5)

        assert detect_recurrence("明天开会", TODAY) is None

    def test_resolve_timezone_fallback(self):
        assert resolve_timezone("Asia/Tokyo") == "Asia/Tokyo"
        assert resolve_timezone("Mars/Base") == resolve_timezone(None)

    def test_coerce_local_datetime(self):
        value = coerce_local_datetime("2026-03-11T07:00:00Z", "Asia/Shanghai")
        assert value == datetime(2026, 3, 11, 15, 0)
        assert coerce_local_datetime("2026-03-11T15: 00: 00+08: 00", "Asia/Shanghai") == datetime(2026, 3, 11, 15, 0)
        assert coerce_local_datetime("soon", "Asia/Shanghai") is None


class TestBuildEventDraft:
    """Offline create drafts"""

    def test_project_meeting(self):
        message = "明天下午3点开项目会议"
        draft = build_event_draft(extract_entities(message), message, NOW)
        assert draft.title == "项目会议"
        assert draft.start == datetime(2026, 3, 11, 15, 0)
        assert draft.end == datetime(2026, 3, 11, 16, 0)
        assert draft.category == "work"
        assert not draft.all_day
        assert draft.source == "rules"

    def test_all_day(self):
        message = "后天全天团建活动"
        draft = build_event_draft(extract_entities(message), message, NOW)
        assert draft.title == "团建活动"
        assert draft.all_day
        assert draft.start == datetime(2026, 3, 12)
        assert draft.end == datetime(2026, 3, 13)

    def test_weekly_series(self):
        message = "每周一上午10点开周会"
        draft = build_event_draft(extract_entities(message), message, NOW)
        assert draft.title == "周会"
        assert draft.start == datetime(2026, 3, 16, 10, 0)
        assert draft.recurrence.freq == "weekly"
        assert draft.recurrence.by_weekday == [0]

    def test_default_time_and_duration(self):
        message = "明天写项目计划两个小时"
        draft = build_event_draft(extract_entities(message), message, NOW)
        assert draft.start == datetime(2026, 3, 11, 9, 0)
        assert draft.end == datetime(2026, 3, 11, 11, 0)

    def test_no_title(self):
        message = "明天下午3点"
        assert build_event_draft(extract_entities(message), message, NOW) is None


class TestUpdateParsing:
    """Target/change split and patch building"""

    def test_split(self):
        assert split_update_message("把明天的团队会议改到下午4点") == ("把明天的团队会议", "下午4点")
        assert split_update_message("团队会议") == ("团队会议", "")

    def test_new_time_keeps_date_and_duration(self):
        patch = build_update_patch("下午4点", datetime(2026, 3, 11, 10, 0),
                                   datetime(2026, 3, 11, 11, 30), NOW)
        assert patch == {
            "start": datetime(2026, 3, 11, 16, 0),
            "end": datetime(2026, 3, 11, 17, 30),
        }

    def test_new_date_keeps_time(self):
        patch = build_update_patch("后天", datetime(2026, 3, 11, 10, 0),
                                   datetime(2026, 3, 11, 11, 0), NOW)
        assert patch["start"] == datetime(2026, 3, 12, 10, 0)
        assert patch["end"] == datetime(2026, 3, 12, 11, 0)

    def test_location_and_title(self):
        patch = build_update_patch('在会议室B，标题"需求评审"', datetime(2026, 3, 11, 10, 0),
                                   datetime(2026, 3, 11, 11, 0), NOW)
        assert patch["location"] == "会议室B"
        assert patch["title"] == "需求评审"
        assert "start" not in patch

    def test_nothing_to_change(self):
        assert build_update_patch("", datetime(2026, 3, 11, 10, 0),
                                  datetime(2026, 3, 11, 11, 0), NOW) == {}
