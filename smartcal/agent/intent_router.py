from __future__ import annotations

from typing import Literal, Optional
import re

from ..utils import _log_debug
from .normalizer import normalize_message
from .schemas import ConfirmationContext, Entities, ParsedIntent
from .slot_extractor import extract_entities

QueryKind = Literal["list", "free_slots", "analysis"]

CONFIRM_KEYWORDS = ("是", "对", "确认", "好", "可以", "yes", "ok", "删除", "确定")
CANCEL_KEYWORDS = ("不", "否", "取消", "算了", "no", "不要", "不用")
# One-word replies that read as confirm/cancel even with nothing pending
BARE_REPLIES = ("确认", "确定", "是", "好", "yes", "ok", "取消", "算了", "不要", "no")

DELETE_KEYWORDS = ("删除", "删掉", "删了", "去掉", "去除", "取消", "清除", "清掉", "移除",
                   "移掉", "不要", "不用", "撤销", "撤掉")
DELETE_CONTEXT_KEYWORDS = ("日程", "日历", "事件", "安排", "会议", "活动", "计划", "约会", "提醒")
STRONG_DELETE_KEYWORDS = ("删除", "取消")

UPDATE_KEYWORDS = ("修改", "更改", "改到", "改成", "改为", "推迟", "提前", "挪到", "移到", "调整",
                   "改期")

CREATE_KEYWORDS = ("创建", "新建", "添加", "安排", "预约", "约", "设置", "设定", "建立", "制定")
EVENT_KEYWORDS = ("会议", "事件", "日程", "活动", "约会", "计划", "安排", "提醒", "任务")

QUERY_KEYWORDS = ("查看", "看看", "显示", "告诉我", "什么", "哪些", "多少", "几个", "有没有", "是否")
FREE_TIME_KEYWORDS = ("空闲", "有空", "空闲时间", "可用时间")
ANALYSIS_KEYWORDS = ("分析", "统计", "报告")

_DATE_WORDS = ("今天", "明天", "后天", "昨天", "今日", "明日", "本周", "下周", "上周", "这周", "周",
               "月", "日")
_DATE_PATTERNS = (re.compile(r"\d+[./-]\d+"), re.compile(r"\d+月"), re.compile(r"\d+日"),
                  re.compile(r"\d+号"))
_TIME_WORDS = ("点", "时", "分", "上午", "下午", "晚上", "中午", "凌晨")
_TIME_PATTERNS = (re.compile(r"\d+:\d+"), re.compile(r"\d+点"), re.compile(r"\d+时"))

_SUGGESTIONS = {
    "delete": ["确认删除", "取消操作", "查看要删除的事件"],
    "update": ["确认修改", "取消操作", "查看事件"],
    "create": ["添加到日历", "设置提醒", "查看冲突"],
    "query": ["查看详情", "编辑事件", "删除事件"],
    "unknown": ["创建新事件", "查看日程", "删除事件"],
}


def _contains_any(message: str, keywords) -> bool:
  return any(k in message for k in keywords)


def has_date_reference(message: str) -> bool:
  if _contains_any(message, _DATE_WORDS):
    return True
  return any(p.search(message) for p in _DATE_PATTERNS)


def has_time_reference(message: str) -> bool:
  if _contains_any(message, _TIME_WORDS):
    return True
  return any(p.search(message) for p in _TIME_PATTERNS)


def query_kind(message: str) -> QueryKind:
  text = normalize_message(message)
  if _contains_any(text, FREE_TIME_KEYWORDS):
    return "free_slots"
  if _contains_any(text, ANALYSIS_KEYWORDS):
    return "analysis"
  return "list"


class IntentClassifier:
  """Keyword/pattern intent classifier for free-text calendar commands."""

  def identify(self,
               message: str,
               context: Optional[ConfirmationContext] = None) -> ParsedIntent:
    normalized = normalize_message(message)

    if context is not None or normalized in BARE_REPLIES:
      reply = self._parse_confirmation_reply(normalized)
      if reply is not None:
        return reply

    intent = self._classify(normalized)
    _log_debug(f"[AGENT] intent={intent.type} confidence={intent.confidence} "
               f"entities={intent.entities.model_dump(exclude_none=True)}")
    return intent

  def _parse_confirmation_reply(self, message: str) -> Optional[ParsedIntent]:
    if _contains_any(message, CONFIRM_KEYWORDS):
      return ParsedIntent(type="confirm", confidence=0.9, original_message=message)
    if _contains_any(message, CANCEL_KEYWORDS):
      return ParsedIntent(type="cancel", confidence=0.9, original_message=message)
    return None

  def _classify(self, message: str) -> ParsedIntent:
    entities = extract_entities(message)

    if self.is_delete_intent(message):
      return self._intent("delete", self.delete_confidence(message, entities), entities, message)
    if self.is_update_intent(message):
      return self._intent("update", self.update_confidence(entities), entities, message)
    if self.is_create_intent(message):
      return self._intent("create", self.create_confidence(entities), entities, message)
    if self.is_query_intent(message):
      return self._intent("query", 0.8, entities, message)
    return self._intent("unknown", 0.1, entities, message)

  @staticmethod
  def _intent(kind, confidence: float, entities: Entities, message: str) -> ParsedIntent:
    return ParsedIntent(
        type=kind,
        confidence=confidence,
        entities=entities,
        original_message=message,
        suggestions=list(_SUGGESTIONS[kind]),
    )

  # -------------------------
  # predicates
  # -------------------------
  @staticmethod
  def is_delete_intent(message: str) -> bool:
    if not _contains_any(message, DELETE_KEYWORDS):
      return False
    return _contains_any(message, DELETE_CONTEXT_KEYWORDS) or has_date_reference(message)

  @staticmethod
  def is_update_intent(message: str) -> bool:
    if not _contains_any(message, UPDATE_KEYWORDS):
      return False
    return (_contains_any(message, DELETE_CONTEXT_KEYWORDS)
            or has_date_reference(message)
            or has_time_reference(message))

  @staticmethod
  def is_create_intent(message: str) -> bool:
    has_create = _contains_any(message, CREATE_KEYWORDS)
    has_event = _contains_any(message, EVENT_KEYWORDS)
    has_time = has_time_reference(message)
    return (has_create and has_event) or (has_event and has_time) or (has_create and has_time)

  @staticmethod
  def is_query_intent(message: str) -> bool:
    return (_contains_any(message, QUERY_KEYWORDS)
            or _contains_any(message, FREE_TIME_KEYWORDS)
            or _contains_any(message, ANALYSIS_KEYWORDS))

  # -------------------------
  # confidence
  # -------------------------
  @staticmethod
  def delete_confidence(message: str, entities: Entities) -> float:
    confidence = 0.6
    if entities.event_title:
      confidence += 0.2
    if entities.date:
      confidence += 0.1
    if entities.time:
      confidence += 0.05
    if _contains_any(message, STRONG_DELETE_KEYWORDS):
      confidence += 0.1
    return round(min(confidence, 0.95), 2)

  @staticmethod
  def create_confidence(entities: Entities) -> float:
    confidence = 0.5
    if entities.event_title:
      confidence += 0.2
    if entities.date:
      confidence += 0.15
    if entities.time:
      confidence += 0.1
    if entities.location:
      confidence += 0.05
    return round(min(confidence, 0.9), 2)

  @staticmethod
  def update_confidence(entities: Entities) -> float:
    confidence = 0.55
    if entities.event_title:
      confidence += 0.2
    if entities.date:
      confidence += 0.1
    if entities.time:
      confidence += 0.1
    return round(min(confidence, 0.9), 2)
