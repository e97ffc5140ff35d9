"""Peer Channel wire format (JSON text frames over a WebSocket)."""

from __future__ import annotations

import json
from typing import Any

REGISTER = "register"
REGISTERED = "registered"
PING = "ping"
PONG = "pong"
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
PAGE_CHANGED = "page_changed"

MESSAGE_TYPES = frozenset({REGISTER, REGISTERED, PING, PONG, TOOL_CALL, TOOL_RESULT, PAGE_CHANGED})


def register(client: str, **extra: Any) -> dict[str, Any]:
    return {"type": REGISTER, "client": client, **extra}


def registered() -> dict[str, Any]:
    return {"type": REGISTERED}


def ping() -> dict[str, Any]:
    return {"type": PING}


def pong() -> dict[str, Any]:
    return {"type": PONG}


def tool_call(call_id: int, tool: str, params: dict[str, Any] | None) -> dict[str, Any]:
    return {"type": TOOL_CALL, "id": int(call_id), "tool": tool, "params": params if isinstance(params, dict) else {}}


def tool_result(call_id: Any, result: Any) -> dict[str, Any]:
    return {"type": TOOL_RESULT, "id": call_id, "result": result}


def page_changed(url: str | None, title: str | None) -> dict[str, Any]:
    return {"type": PAGE_CHANGED, "url": url, "title": title}


def encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def decode(raw: str | bytes) -> dict[str, Any] | None:
    """Parse one frame. Returns None for anything that is not a typed JSON object."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        msg = json.loads(raw)
    except Exception:
        return None
    if not isinstance(msg, dict):
        return None
    if not isinstance(msg.get("type"), str):
        return None
    return msg


def correlation_id(msg: dict[str, Any]) -> int | None:
    raw_id = msg.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
        return None
    try:
        return int(raw_id)
    except Exception:
        return None
