from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..config import MATCH_LIST_LIMIT
from ..models import CalendarEvent, ConflictInfo, ScheduleAnalysis, TimeSlot
from ..utils import format_event_span, format_event_time
from .schemas import (
    CommandResponse,
    ConfirmationContext,
    EventDraft,
    FunctionCallRecord,
    IntentType,
    ParsedIntent,
)

_CATEGORY_LABELS = {
    "work": "工作",
    "personal": "个人",
    "meeting": "会议",
    "holiday": "假期",
    "travel": "旅行",
    "health": "健康",
    "other": "其他",
}
_ACTION_LABELS = {"delete": "删除", "update": "修改", "create": "创建"}

HELP_MESSAGE = (
    "我可以帮您管理日历：\n"
    "• 创建事件，例如\"明天下午3点开项目会议\"\n"
    "• 删除事件，例如\"删除明天的团队会议\"\n"
    "• 修改事件，例如\"把明天的团队会议改到下午4点\"\n"
    "• 查看日程，例如\"今天有哪些事件\"\n"
    "• 查找空闲时间或生成日程分析"
)


def _location(event: Any) -> str:
  return getattr(event, "location", None) or "未指定地点"


def _event_lines(events: List[CalendarEvent], limit: int = MATCH_LIST_LIMIT) -> str:
  lines = ""
  for idx, ev in enumerate(events[:limit], start=1):
    lines += f"{idx}. **{ev.title}**\n"
    lines += f"   🕐 {format_event_time(ev.start)}\n"
    lines += f"   📍 {_location(ev)}\n\n"
  if len(events) > limit:
    lines += f"... 还有 {len(events) - limit} 个事件\n\n"
  return lines


def _slot_line(slot: TimeSlot) -> str:
  return f"• {slot.start.strftime('%H:%M')} - {slot.end.strftime('%H:%M')}"


# -------------------------
# Match outcomes
# -------------------------
def no_match(intent: ParsedIntent) -> CommandResponse:
  message = "❌ **未找到匹配的事件**\n\n"
  if intent.entities.event_title:
    message += f"没有找到标题包含\"{intent.entities.event_title}\"的事件。\n\n"
  if intent.entities.date:
    message += f"{intent.entities.date}没有安排的事件。\n\n"
  message += "💡 **建议**：\n"
  message += "• 检查事件名称是否正确\n"
  message += "• 尝试使用部分关键词\n"
  message += "• 查看所有事件列表"
  return CommandResponse(
      success=False,
      message=message,
      suggestions=["查看所有事件", "重新输入", "今天的事件"],
      intent=intent.type,
  )


def too_many_matches(events: List[CalendarEvent], intent_type: IntentType) -> CommandResponse:
  return CommandResponse(
      success=False,
      message=(f"🔍 **找到太多匹配事件 ({len(events)}个)**\n\n"
               "请提供更具体的信息：\n"
               "• 事件的完整名称\n"
               "• 具体的日期和时间\n"
               "• 或者使用\"删除今天的所有事件\""),
      suggestions=["今天的事件", "明天的事件", "重新输入"],
      intent=intent_type,
  )


def single_delete_confirmation(event: CalendarEvent) -> CommandResponse:
  message = ("🎯 **找到匹配的事件**\n\n"
             f"📅 **{event.title}**\n"
             f"🕐 {format_event_time(event.start)}\n"
             f"📍 {_location(event)}\n\n"
             "❓ **确认删除这个事件吗？**\n\n"
             "请回复\"确认\"或\"取消\"")
  return CommandResponse(
      success=True,
      message=message,
      needs_confirmation=True,
      candidate_events=[event],
      suggestions=["确认删除", "取消操作", "查看详情"],
      intent="delete",
  )


def candidate_list(events: List[CalendarEvent],
                   intent_type: IntentType,
                   batch: bool) -> CommandResponse:
  message = f"🔍 **找到 {len(events)} 个匹配的事件**\n\n" + _event_lines(events)
  if batch:
    message += "💡 **操作选项**：\n"
    message += "• 回复\"确认\"删除所有匹配的事件\n"
    message += "• 回复\"取消\"放弃操作\n"
    message += "• 提供更具体的事件名称"
    return CommandResponse(
        success=True,
        message=message,
        needs_confirmation=True,
        candidate_events=events,
        suggestions=["确认删除所有", "取消操作", "重新选择"],
        intent=intent_type,
    )
  action = _ACTION_LABELS.get(intent_type, "删除")
  message += f"💡 **请提供更具体的信息**以选择要{action}的事件"
  return CommandResponse(
      success=False,
      message=message,
      candidate_events=events,
      suggestions=["重新输入", f"{action}全部" if intent_type == "delete" else "查看事件", "取消操作"],
      intent=intent_type,
  )


# -------------------------
# Confirm / cancel
# -------------------------
def no_pending_confirmation() -> CommandResponse:
  return CommandResponse(
      success=False,
      message="❌ 没有待确认的删除操作。",
      suggestions=["重新开始", "查看事件"],
      intent="confirm",
  )


def delete_failed(detail: Optional[str] = None) -> CommandResponse:
  message = "❌ 删除事件失败，请稍后重试。"
  if detail:
    message += f"\n\n{detail}"
  return CommandResponse(
      success=False,
      message=message,
      suggestions=["重新尝试", "查看事件"],
      intent="confirm",
  )


def delete_succeeded(deleted: List[CalendarEvent],
                     failures: Optional[List[str]] = None) -> CommandResponse:
  if len(deleted) == 1:
    event = deleted[0]
    message = ("✅ **事件删除成功！**\n\n"
               f"📅 **{event.title}**\n"
               f"🕐 {format_event_time(event.start)}\n\n"
               "事件已从您的日历中移除。")
    result: Any = event.model_dump(mode="json")
  else:
    message = ("✅ **批量删除成功！**\n\n"
               f"共删除了 **{len(deleted)}** 个事件：\n"
               + "\n".join(f"• {ev.title}" for ev in deleted) + "\n\n"
               "所有事件已从您的日历中移除。")
    result = {
        "deletedCount": len(deleted),
        "events": [ev.model_dump(mode="json") for ev in deleted],
    }
  if failures:
    message += "\n\n⚠️ 以下事件未能删除：\n" + "\n".join(f"• {f}" for f in failures)

  return CommandResponse(
      success=True,
      message=message,
      suggestions=["查看今日日程", "添加新事件", "查看本周安排"],
      function_calls=[
          FunctionCallRecord(
              name="deleteCalendarEvent",
              arguments={"eventIds": [ev.id for ev in deleted], "count": len(deleted)},
              success=True,
              result=result,
          )
      ],
      intent="confirm",
  )


def nothing_to_cancel() -> CommandResponse:
  return CommandResponse(
      success=True,
      message="✅ 没有待取消的操作。",
      suggestions=["查看事件", "创建新事件"],
      intent="cancel",
  )


def cancelled(context: ConfirmationContext) -> CommandResponse:
  action = _ACTION_LABELS.get(context.pending_action, "删除")
  if context.pending_action == "create" and context.draft is not None:
    kept = f"事件\"{context.draft.title}\"未创建。"
  elif len(context.target_events) == 1:
    kept = f"事件\"{context.target_events[0].title}\"已保留。"
  else:
    kept = f"{len(context.target_events)}个事件已保留。"
  return CommandResponse(
      success=True,
      message=f"🚫 **{action}操作已取消**\n\n{kept}",
      suggestions=["查看事件", f"重新{action}", "创建新事件"],
      intent="cancel",
  )


# -------------------------
# Update
# -------------------------
def _describe_patch(patch: Dict[str, Any], event: CalendarEvent) -> str:
  lines: List[str] = []
  if "title" in patch:
    lines.append(f"📝 标题：{event.title} → {patch['title']}")
  if "start" in patch:
    new_end = patch.get("end", event.end)
    lines.append(f"🕐 时间：{format_event_span(event.start, event.end, event.all_day)} → "
                 f"{format_event_span(patch['start'], new_end, event.all_day)}")
  if "location" in patch:
    lines.append(f"📍 地点：{_location(event)} → {patch['location']}")
  return "\n".join(lines)


def update_confirmation(event: CalendarEvent, patch: Dict[str, Any]) -> CommandResponse:
  message = ("🎯 **找到匹配的事件**\n\n"
             f"📅 **{event.title}**\n"
             f"{_describe_patch(patch, event)}\n\n"
             "❓ **确认修改这个事件吗？**\n\n"
             "请回复\"确认\"或\"取消\"")
  return CommandResponse(
      success=True,
      message=message,
      needs_confirmation=True,
      candidate_events=[event],
      suggestions=["确认修改", "取消操作", "查看详情"],
      intent="update",
  )


def update_missing_change(event: CalendarEvent) -> CommandResponse:
  return CommandResponse(
      success=False,
      message=(f"🤔 找到了事件\"{event.title}\"，但没有识别出要修改的内容。\n\n"
               "请说明新的日期、时间或地点，例如\"改到明天下午4点\"。"),
      candidate_events=[event],
      suggestions=["改到明天", "推迟一小时", "取消操作"],
      intent="update",
  )


def update_conflict(event: CalendarEvent, info: ConflictInfo) -> CommandResponse:
  names = "、".join(ev.title for ev in info.conflicting_events)
  message = f"⚠️ 修改\"{event.title}\"后会与以下事件冲突：{names}。事件未修改。"
  if info.suggestions:
    message += "\n\n🕐 可选时间段：\n" + "\n".join(_slot_line(s) for s in info.suggestions)
  return CommandResponse(
      success=False,
      message=message,
      candidate_events=info.conflicting_events,
      suggestions=["查看空闲时间", "重新修改", "查看事件"],
      intent="confirm",
  )


def update_succeeded(before: CalendarEvent, after: CalendarEvent) -> CommandResponse:
  return CommandResponse(
      success=True,
      message=("✅ **事件修改成功！**\n\n"
               f"📅 **{after.title}**\n"
               f"🕐 {format_event_span(after.start, after.end, after.all_day)}\n"
               f"📍 {_location(after)}"),
      suggestions=["查看今日日程", "添加新事件", "查看本周安排"],
      function_calls=[
          FunctionCallRecord(
              name="updateCalendarEvent",
              arguments={"eventId": before.id, "version": before.version},
              success=True,
              result=after.model_dump(mode="json"),
          )
      ],
      intent="confirm",
  )


# -------------------------
# Create
# -------------------------
def missing_create_info() -> CommandResponse:
  return CommandResponse(
      success=False,
      message="请提供事件的标题和时间。例如：\"明天下午2点创建团队会议\"",
      suggestions=["明天下午2点创建团队会议", "查看今天的安排"],
      intent="create",
  )


def event_created(event: CalendarEvent, intent_type: IntentType = "create") -> CommandResponse:
  message = (f"✅ 已为您创建事件：{event.title}\n"
             f"📅 时间：{format_event_span(event.start, event.end, event.all_day)}\n"
             f"📍 地点：{event.location or '未指定'}\n"
             f"🏷️ 类别：{_CATEGORY_LABELS.get(event.category, '工作')}\n"
             f"⏰ 全天：{'是' if event.all_day else '否'}")
  if event.recurrence is not None:
    message += "\n🔁 重复：是"
  return CommandResponse(
      success=True,
      message=message,
      candidate_events=[event],
      suggestions=["查看今日日程", "设置提醒", "查看冲突"],
      function_calls=[
          FunctionCallRecord(
              name="createCalendarEvent",
              arguments={
                  "title": event.title,
                  "startTime": event.start.isoformat(),
                  "endTime": event.end.isoformat(),
                  "location": event.location,
                  "category": event.category,
              },
              success=True,
              result=event.model_dump(mode="json"),
          )
      ],
      intent=intent_type,
  )


def create_conflict(draft: EventDraft, info: ConflictInfo) -> CommandResponse:
  names = "、".join(ev.title for ev in info.conflicting_events)
  message = f"发现时间冲突：{names}。建议调整时间或选择其他时间段。"
  if info.suggestions:
    message += "\n\n🕐 可选时间段：\n" + "\n".join(_slot_line(s) for s in info.suggestions)
    message += "\n\n回复\"确认\"将按第一个可选时间段创建，回复\"取消\"放弃。"
  return CommandResponse(
      success=False,
      message=message,
      needs_confirmation=bool(info.suggestions),
      candidate_events=info.conflicting_events,
      suggestions=["确认", "取消", "查看空闲时间"],
      intent="create",
  )


# -------------------------
# Query / misc
# -------------------------
def event_list(events: List[CalendarEvent]) -> CommandResponse:
  if not events:
    return CommandResponse(
        success=True,
        message="📅 当前时间段没有安排的事件。",
        candidate_events=[],
        suggestions=["创建新事件", "查看明天的安排"],
        intent="query",
    )
  message = f"📅 找到 {len(events)} 个事件：\n\n"
  for idx, ev in enumerate(events, start=1):
    message += f"{idx}. {ev.title}\n"
    message += f"   ⏰ {format_event_span(ev.start, ev.end, ev.all_day)}\n"
    message += f"   📍 {_location(ev)}\n"
    message += f"   🏷️ {_CATEGORY_LABELS.get(ev.category, ev.category)}\n\n"
  return CommandResponse(
      success=True,
      message=message.rstrip(),
      candidate_events=events,
      suggestions=["查看详情", "编辑事件", "删除事件"],
      intent="query",
  )


def free_slots(slots: List[TimeSlot], day_label: str = "今日") -> CommandResponse:
  if not slots:
    message = f"🕐 {day_label}工作时间内已没有可用时间段。"
  else:
    message = f"🕐 {day_label}可用时间段：\n\n" + "\n".join(_slot_line(s) for s in slots)
  return CommandResponse(
      success=True,
      message=message,
      suggestions=["在空闲时间创建事件", "查看今天的安排"],
      intent="query",
  )


def analysis_report(report: ScheduleAnalysis) -> CommandResponse:
  lines = [
      "📊 日历分析报告：",
      "",
      f"📅 总事件数：{report.total_events}",
      f"⏰ 总时长：{report.total_hours}小时",
      f"⌛ 平均时长：{report.average_event_duration}分钟",
  ]
  if report.busiest_day is not None:
    lines.append(f"📈 最忙的一天：{report.busiest_day.strftime('%Y/%m/%d')}")
  if report.busiest_time_slot:
    lines.append(f"🔥 最忙时段：{report.busiest_time_slot}")
  lines.append(f"🧩 碎片时间：{report.fragmented_minutes}分钟")
  lines.append(f"🎯 专注时块：{len(report.focus_time_blocks)}个")
  for category, count in sorted(report.category_counts.items()):
    lines.append(f"🏷️ {_CATEGORY_LABELS.get(category, category)}：{count}")
  if report.recommendations:
    lines.append("")
    lines.append("💡 建议：")
    lines.extend(f"• {r}" for r in report.recommendations)
  return CommandResponse(
      success=True,
      message="\n".join(lines),
      suggestions=["查看本周安排", "查找空闲时间"],
      intent="query",
  )


def help_message() -> CommandResponse:
  return CommandResponse(
      success=True,
      message=HELP_MESSAGE,
      suggestions=["创建新事件", "查看日程", "删除事件"],
      intent="unknown",
  )


def operation_failed(detail: str, intent_type: Optional[IntentType] = None) -> CommandResponse:
  return CommandResponse(
      success=False,
      message=f"❌ 操作失败：{detail}",
      suggestions=["重新尝试", "查看事件"],
      intent=intent_type,
  )
