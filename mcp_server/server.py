from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from mcp.server.fastmcp import FastMCP

BACKEND_BASE_URL = os.getenv("BACKEND_BASE_URL", "http://localhost:8000").rstrip("/")
BACKEND_API_BASE = os.getenv("BACKEND_API_BASE", "/api").rstrip("/")
DEFAULT_SESSION_ID = os.getenv("MCP_SESSION_ID", "mcp").strip() or "mcp"
REQUEST_TIMEOUT = float(os.getenv("MCP_BACKEND_TIMEOUT", "15"))
DEBUG_MODE = os.getenv("MCP_DEBUG", "1").strip() in ("1", "true", "True", "yes")
LOG_REQUESTS = os.getenv("MCP_LOG_REQUESTS", "0").strip() in ("1", "true", "True", "yes")

mcp = FastMCP("smartcal-agent")


def _log_tool_call(tool_name: str, input_data: Dict[str, Any], output_data: Dict[str, Any]) -> None:
  """打印工具调用的输入和输出"""
  if not DEBUG_MODE:
    return
  print(f"\n{'='*80}")
  print(f"Tool: {tool_name}")
  print(f"{'='*80}")
  print("输入:")
  print(json.dumps(input_data, indent=2, ensure_ascii=False, default=str))
  print("\n输出:")
  print(json.dumps(output_data, indent=2, ensure_ascii=False, default=str))
  print(f"{'='*80}\n", flush=True)


class RequestLoggerMiddleware:
  def __init__(self, app: Any):
    self.app = app

  async def __call__(self, scope: Dict[str, Any], receive: Any, send: Any) -> None:
    if scope.get("type") != "http":
      await self.app(scope, receive, send)
      return

    method = scope.get("method", "")
    path = scope.get("path", "")
    headers = self._decode_headers(scope.get("headers") or [])

    self._log_request(method, path, headers)
    await self.app(scope, receive, send)

  def _decode_headers(self, raw_headers: List[Tuple[bytes, bytes]]) -> Dict[str, str]:
    return {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in raw_headers}

  def _log_request(self, method: str, path: str, headers: Dict[str, str]) -> None:
    if not LOG_REQUESTS:
      return
    safe_headers = dict(headers)
    if "authorization" in safe_headers:
      safe_headers["authorization"] = "(redacted)"

    print("\n" + "=" * 80)
    print("MCP HTTP Request")
    print("=" * 80)
    print(f"method: {method}  path: {path}")
    print(json.dumps(safe_headers, indent=2, ensure_ascii=False))
    print("=" * 80 + "\n", flush=True)


def _api_path(path: str) -> str:
  return f"{BACKEND_API_BASE}/{path.lstrip('/')}"


def _request(method: str,
             path: str,
             params: Optional[Dict[str, Any]] = None,
             payload: Optional[Dict[str, Any]] = None,
             expect_json: bool = True) -> Dict[str, Any]:
  url = f"{BACKEND_BASE_URL}{path}"
  try:
    resp = requests.request(method,
                            url,
                            params=params,
                            json=payload,
                            timeout=REQUEST_TIMEOUT)
  except requests.RequestException as exc:
    return {
        "ok": False,
        "code": "request_failed",
        "message": f"Backend request failed: {exc}",
    }

  if expect_json or resp.status_code >= 400:
    try:
      data = resp.json()
    except ValueError:
      data = {"raw": resp.text}
  else:
    data = resp.text

  if resp.status_code >= 400:
    return {
        "ok": False,
        "code": "conflict" if resp.status_code == 409 else "backend_error",
        "status": resp.status_code,
        "error": data,
    }

  return {"ok": True, "data": data}


def _invalid(tool_name: str, input_data: Dict[str, Any], message: str) -> Dict[str, Any]:
  result = {"ok": False, "code": "invalid_request", "message": message}
  _log_tool_call(tool_name, input_data, result)
  return result


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
  return {k: v for k, v in values.items() if v is not None}


@mcp.tool(name="calendar.command")
def calendar_command(
    message: str,
    session_id: Optional[str] = None,
    timezone: Optional[str] = None,
) -> Dict[str, Any]:
  """Run a Chinese natural-language calendar command (create/delete/update/query/confirm)."""
  input_data = {"message": message, "session_id": session_id, "timezone": timezone}
  if not (message or "").strip():
    return _invalid("calendar.command", input_data, "message is required.")
  payload = _drop_none({
      "message": message,
      "session_id": (session_id or DEFAULT_SESSION_ID).strip(),
      "timezone": timezone,
  })
  result = _request("POST", _api_path("/agent/command"), payload=payload)
  _log_tool_call("calendar.command", input_data, result)
  return result


@mcp.tool(name="calendar.list_events")
def calendar_list_events(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    query: Optional[str] = None,
    timezone: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
  input_data = {
      "start_date": start_date,
      "end_date": end_date,
      "query": query,
      "timezone": timezone,
      "limit": limit,
  }
  if bool(start_date) != bool(end_date):
    return _invalid("calendar.list_events", input_data,
                    "start_date and end_date must be given together.")
  params = _drop_none({"start_date": start_date, "end_date": end_date, "timezone": timezone})
  result = _request("GET", _api_path("/events"), params=params)
  if not result.get("ok"):
    _log_tool_call("calendar.list_events", input_data, result)
    return result

  items = result.get("data") or []
  if query:
    lowered = query.lower()
    items = [
        item for item in items
        if lowered in f"{item.get('title') or ''} {item.get('location') or ''} "
        f"{item.get('description') or ''}".lower()
    ]
  if isinstance(limit, int) and limit > 0:
    items = items[:limit]
  result = {"ok": True, "data": items}
  _log_tool_call("calendar.list_events", input_data, result)
  return result


@mcp.tool(name="calendar.create_event")
def calendar_create_event(
    title: str,
    start: str,
    end: Optional[str] = None,
    all_day: Optional[bool] = None,
    location: Optional[str] = None,
    description: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    timezone: Optional[str] = None,
    allow_conflict: bool = False,
) -> Dict[str, Any]:
  payload = _drop_none({
      "title": title,
      "start": start,
      "end": end,
      "all_day": all_day,
      "location": location,
      "description": description,
      "category": category,
      "priority": priority,
      "timezone": timezone,
  })
  input_data = dict(payload, allow_conflict=allow_conflict)
  if not (title or "").strip() or not start:
    return _invalid("calendar.create_event", input_data, "title and start are required.")
  params = {"allow_conflict": "true"} if allow_conflict else None
  result = _request("POST", _api_path("/events"), params=params, payload=payload)
  _log_tool_call("calendar.create_event", input_data, result)
  return result


@mcp.tool(name="calendar.delete_event")
def calendar_delete_event(
    event_id: str,
    mode: Optional[str] = None,
    date: Optional[str] = None,
    version: Optional[int] = None,
) -> Dict[str, Any]:
  """Delete an event. `mode` (single/following/all) plus `date` targets a recurring series."""
  input_data = {"event_id": event_id, "mode": mode, "date": date, "version": version}
  if not event_id:
    return _invalid("calendar.delete_event", input_data, "event_id is required.")
  safe_event_id = quote(str(event_id), safe="")
  if mode:
    if mode not in ("single", "following", "all"):
      return _invalid("calendar.delete_event", input_data,
                      "mode must be one of single, following, all.")
    result = _request("DELETE",
                      _api_path(f"/recurring-events/{safe_event_id}"),
                      params=_drop_none({"mode": mode, "date": date}))
  else:
    result = _request("DELETE",
                      _api_path(f"/events/{safe_event_id}"),
                      params=_drop_none({"version": version}))
  _log_tool_call("calendar.delete_event", input_data, result)
  return result


@mcp.tool(name="calendar.check_conflict")
def calendar_check_conflict(
    start: str,
    end: str,
    timezone: Optional[str] = None,
    exclude_id: Optional[str] = None,
) -> Dict[str, Any]:
  input_data = {"start": start, "end": end, "timezone": timezone, "exclude_id": exclude_id}
  if not start or not end:
    return _invalid("calendar.check_conflict", input_data, "start and end are required.")
  result = _request("GET", _api_path("/conflicts"), params=_drop_none(input_data))
  _log_tool_call("calendar.check_conflict", input_data, result)
  return result


@mcp.tool(name="calendar.find_free_slots")
def calendar_find_free_slots(
    date: Optional[str] = None,
    duration_minutes: Optional[int] = None,
    timezone: Optional[str] = None,
) -> Dict[str, Any]:
  input_data = {"date": date, "duration_minutes": duration_minutes, "timezone": timezone}
  params = _drop_none({"date": date, "duration": duration_minutes, "timezone": timezone})
  result = _request("GET", _api_path("/free-slots"), params=params)
  _log_tool_call("calendar.find_free_slots", input_data, result)
  return result


@mcp.tool(name="calendar.export")
def calendar_export(format: str = "ics") -> Dict[str, Any]:
  input_data = {"format": format}
  if format not in ("ics", "csv"):
    return _invalid("calendar.export", input_data, "format must be ics or csv.")
  result = _request("GET", _api_path("/export"), params={"format": format}, expect_json=False)
  if result.get("ok"):
    result = {"ok": True, "data": {"format": format, "content": result.get("data")}}
  _log_tool_call("calendar.export", input_data, {"ok": result.get("ok"), "format": format})
  return result


if __name__ == "__main__":
  import uvicorn

  host = os.getenv("MCP_HOST", "0.0.0.0")
  port = int(os.getenv("MCP_PORT", "8001"))
  app = mcp.streamable_http_app()
  if LOG_REQUESTS:
    app = RequestLoggerMiddleware(app)
  uvicorn.run(app, host=host, port=port)
