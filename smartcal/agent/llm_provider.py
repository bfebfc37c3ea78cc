from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

from openai import AsyncOpenAI
from pydantic import ValidationError

from ..config import (
    AGENT_LLM_MODEL,
    LLM_DEBUG,
    LLM_MAX_COMPLETION_TOKENS,
    LLM_TIMEOUT_SECONDS,
    OPENAI_API_KEY,
)
from .schemas import CreateEventArguments, LLMReply

async_client: Optional[AsyncOpenAI] = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

CREATE_EVENT_FUNCTION = "createCalendarEvent"

CREATE_EVENT_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": CREATE_EVENT_FUNCTION,
        "description": "在用户的日历中创建一个新事件",
        "parameters": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "事件标题"},
                "startTime": {"type": "string", "description": "开始时间，ISO 8601 格式"},
                "endTime": {"type": "string", "description": "结束时间，ISO 8601 格式"},
                "location": {"type": "string", "description": "地点"},
                "description": {"type": "string", "description": "描述"},
                "category": {
                    "type": "string",
                    "enum": ["work", "personal", "meeting", "holiday", "travel", "health", "other"],
                },
                "priority": {"type": "string", "enum": ["low", "medium", "high"]},
            },
            "required": ["title", "startTime", "endTime"],
        },
    },
}

SYSTEM_PROMPT_TEMPLATE = """你是一个日历助手，负责把用户的自然语言请求转换为日历事件。
当前时间：{now_iso}。时区：{timezone}。
如果用户要创建事件，调用 createCalendarEvent，时间使用 ISO 8601 格式并带上时区偏移。
没有给出结束时间时，默认持续 1 小时。
如果信息不足以创建事件，用中文简短地回复需要补充的内容。
"""


def get_async_client() -> AsyncOpenAI:
  if async_client is None:
    raise RuntimeError("OPENAI_API_KEY is not set")
  return async_client


def _print_raw_output(*, kind: str, model: str, raw_output: str) -> None:
  if not LLM_DEBUG:
    return
  print(f"[AGENT LLM RAW] kind={kind} model={model}", flush=True)
  print(raw_output if raw_output else "(empty)", flush=True)
  print("[AGENT LLM RAW END]", flush=True)


def _compose_messages(message: str, now_iso: str, timezone: str) -> List[Dict[str, str]]:
  return [
      {
          "role": "system",
          "content": SYSTEM_PROMPT_TEMPLATE.format(now_iso=now_iso, timezone=timezone),
      },
      {
          "role": "user",
          "content": message,
      },
  ]


def _parse_completion(completion: Any) -> Tuple[Optional[LLMReply], Optional[str]]:
  """(reply, error) from a chat completion."""
  choices = getattr(completion, "choices", None) or []
  if not choices:
    return None, "empty_choices"
  msg = choices[0].message
  tool_calls = getattr(msg, "tool_calls", None) or []
  for call in tool_calls:
    fn = getattr(call, "function", None)
    if fn is None or fn.name != CREATE_EVENT_FUNCTION:
      continue
    _print_raw_output(kind="function_call", model=AGENT_LLM_MODEL, raw_output=fn.arguments or "")
    try:
      raw_args = json.loads(fn.arguments or "{}")
      arguments = CreateEventArguments.model_validate(raw_args)
    except (ValueError, ValidationError) as exc:
      return None, f"invalid_arguments: {exc}"
    return LLMReply(function_name=fn.name, arguments=arguments), None

  text = (getattr(msg, "content", None) or "").strip()
  _print_raw_output(kind="text", model=AGENT_LLM_MODEL, raw_output=text)
  if not text:
    return None, "empty_output"
  return LLMReply(text=text), None


async def run_function_call_completion(
    *,
    message: str,
    now_iso: str,
    timezone: str,
    timeout: float = LLM_TIMEOUT_SECONDS,
    cancel_event: Optional[asyncio.Event] = None,
    model: str = AGENT_LLM_MODEL,
) -> Tuple[Optional[LLMReply], Dict[str, Any]]:
  """Ask the model to turn `message` into a createCalendarEvent call.

  Never raises: every failure comes back as (None, meta) with one of
  `llm_available=False`, `timed_out`, `cancelled` or `llm_error` set.
  """
  meta: Dict[str, Any] = {"model": model, "llm_available": True}
  try:
    client = get_async_client()
  except Exception:
    meta["llm_available"] = False
    return None, meta

  request = asyncio.ensure_future(
      client.chat.completions.create(
          model=model,
          messages=_compose_messages(message, now_iso, timezone),
          tools=[CREATE_EVENT_TOOL],
          tool_choice="auto",
          max_tokens=LLM_MAX_COMPLETION_TOKENS,
      ))
  waiters = {request}
  canceller: Optional[asyncio.Future] = None
  if cancel_event is not None:
    canceller = asyncio.ensure_future(cancel_event.wait())
    waiters.add(canceller)

  try:
    done, _pending = await asyncio.wait_for(
        asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED), timeout=timeout)
  except asyncio.TimeoutError:
    request.cancel()
    meta["timed_out"] = True
    print(f"[AGENT LLM ERROR] model={model} error=timeout after {timeout}s", flush=True)
    return None, meta
  finally:
    if canceller is not None:
      canceller.cancel()

  if request not in done:
    request.cancel()
    meta["cancelled"] = True
    return None, meta

  try:
    completion = request.result()
  except Exception as exc:
    print(f"[AGENT LLM ERROR] model={model} error={exc}", flush=True)
    meta["llm_error"] = str(exc)
    return None, meta

  reply, error = _parse_completion(completion)
  if error:
    meta["llm_error"] = error
  return reply, meta
