"""
Conflict Manager: 时间冲突检测与空闲时段
- 区间重叠判断
- 冲突时给出替代时段
- 日程繁忙度分析
"""

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..config import MAX_CONFLICT_SUGGESTIONS, WORKING_HOURS_END, WORKING_HOURS_START
from ..models import CalendarEvent, ConflictInfo, ScheduleAnalysis, TimeSlot
from ..utils import parse_hhmm

FRAGMENT_GAP_MINUTES = 60
FOCUS_BLOCK_MINUTES = 120


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open intervals [a_start, a_end) and [b_start, b_end) share time."""
    return a_start < b_end and b_start < a_end


def _working_window(day: date, working_hours: Tuple[str, str]) -> Tuple[datetime, datetime]:
    start_clock = parse_hhmm(working_hours[0]) or parse_hhmm(WORKING_HOURS_START)
    end_clock = parse_hhmm(working_hours[1]) or parse_hhmm(WORKING_HOURS_END)
    return datetime.combine(day, start_clock), datetime.combine(day, end_clock)


def find_available_slots(day: date,
                         duration_minutes: int,
                         events: List[CalendarEvent],
                         working_hours: Tuple[str, str] = (WORKING_HOURS_START, WORKING_HOURS_END)
                         ) -> List[TimeSlot]:
    """
    工作时间内的空闲时段，每个时段恰好 `duration_minutes` 长

    Args:
        day: 目标日期
        duration_minutes: 需要的时长
        events: 候选事件（全天事件会被忽略）
        working_hours: ("HH:MM", "HH:MM")

    Returns:
        按开始时间排序的 TimeSlot 列表
    """
    if duration_minutes <= 0:
        return []
    work_start, work_end = _working_window(day, working_hours)
    duration = timedelta(minutes=duration_minutes)
    day_events = sorted(
        (ev for ev in events
         if not ev.all_day and intervals_overlap(ev.start, ev.end, work_start, work_end)),
        key=lambda ev: ev.start,
    )

    slots: List[TimeSlot] = []
    cursor = work_start
    for ev in day_events:
        gap_end = min(ev.start, work_end)
        if gap_end - cursor >= duration:
            slots.append(TimeSlot(start=cursor, end=min(gap_end, cursor + duration)))
        cursor = max(cursor, ev.end)
    if cursor + duration <= work_end:
        slots.append(TimeSlot(start=cursor, end=cursor + duration))
    return slots


class ConflictDetector:
    """新事件与已有事件的冲突检测"""

    def __init__(self, working_hours: Tuple[str, str] = (WORKING_HOURS_START, WORKING_HOURS_END)):
        self.working_hours = working_hours

    def check_conflict(self,
                       start: datetime,
                       end: datetime,
                       events: List[CalendarEvent],
                       exclude_id: Optional[str] = None) -> ConflictInfo:
        relevant = [
            ev for ev in events
            if not ev.all_day and ev.id != exclude_id and ev.base_id != exclude_id
        ]
        conflicting = [ev for ev in relevant if intervals_overlap(start, end, ev.start, ev.end)]
        if not conflicting:
            return ConflictInfo(has_conflict=False)

        duration_minutes = int((end - start).total_seconds() // 60)
        suggestions = find_available_slots(start.date(), duration_minutes, relevant, self.working_hours)
        return ConflictInfo(
            has_conflict=True,
            conflicting_events=conflicting,
            suggestions=suggestions[:MAX_CONFLICT_SUGGESTIONS],
        )

    def find_available_slots(self,
                             day: date,
                             duration_minutes: int,
                             events: List[CalendarEvent]) -> List[TimeSlot]:
        return find_available_slots(day, duration_minutes, events, self.working_hours)

    def analyze_busy_times(self, events: List[CalendarEvent]) -> ScheduleAnalysis:
        """繁忙度分析：碎片时间、专注时块、类别分布与建议"""
        timed = [ev for ev in events if not ev.all_day]
        total_minutes = sum((ev.end - ev.start).total_seconds() / 60 for ev in timed)
        total_events = len(timed)

        by_day: Dict[date, List[CalendarEvent]] = {}
        for ev in timed:
            by_day.setdefault(ev.start.date(), []).append(ev)
        hourly = Counter(ev.start.hour for ev in timed)

        busiest_day = None
        if by_day:
            busiest_day = max(by_day.items(), key=lambda item: (len(item[1]), -item[0].toordinal()))[0]
        busiest_time_slot = None
        if hourly:
            hour = max(hourly.items(), key=lambda item: (item[1], -item[0]))[0]
            busiest_time_slot = f"{hour:02d}:00-{hour + 1:02d}:00"

        fragmented = 0.0
        focus_blocks: List[TimeSlot] = []
        for day_events in by_day.values():
            day_events.sort(key=lambda ev: ev.start)
            for prev, nxt in zip(day_events, day_events[1:]):
                gap = (nxt.start - prev.end).total_seconds() / 60
                if 0 < gap < FRAGMENT_GAP_MINUTES:
                    fragmented += gap
                elif gap >= FOCUS_BLOCK_MINUTES:
                    focus_blocks.append(TimeSlot(start=prev.end, end=nxt.start))

        recommendations: List[str] = []
        if fragmented > 120:
            recommendations.append("你的日程较为碎片化，建议合并相似的会议减少切换成本")
        if total_events > 8:
            recommendations.append("今日会议较多，建议预留缓冲时间避免疲劳")
        if not focus_blocks:
            recommendations.append("缺少长时间的专注时块，建议安排一些2小时以上的深度工作时间")
        if any(h < 9 or h > 18 for h in hourly):
            recommendations.append("存在非工作时间的安排，注意工作生活平衡")

        return ScheduleAnalysis(
            total_events=total_events,
            total_hours=round(total_minutes / 60, 2),
            average_event_duration=round(total_minutes / total_events) if total_events else 0,
            busiest_day=busiest_day,
            busiest_time_slot=busiest_time_slot,
            fragmented_minutes=round(fragmented),
            focus_time_blocks=focus_blocks,
            category_counts=dict(Counter(ev.category for ev in events)),
            recommendations=recommendations,
        )
