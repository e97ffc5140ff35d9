"""Redaction utilities for logging.

Tool arguments and frames are logged in a redacted, truncated form: typed text,
obvious secrets and large script bodies never reach the log.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

# Avoid false-positives like "author" while still protecting the obvious key.
_SENSITIVE_EXACT = {"auth"}

_MAX_LOGGED_STR = 200


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def redact_url(url: str) -> str:
    """Drop userinfo and redact sensitive query values; unchanged URLs are returned as-is."""
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except Exception:
        return url

    changed = False
    netloc = parts.netloc
    query = parts.query
    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        out_pairs = [(k, "<redacted>" if is_sensitive_key(k) and v else v) for k, v in pairs]
        if out_pairs != pairs:
            query = urlencode(out_pairs, doseq=True)
            changed = True
    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def _redacted_summary(value: Any) -> str:
    if value is None:
        return "<redacted>"
    if isinstance(value, str):
        return f"<redacted str len={len(value)}>"
    if isinstance(value, (list, tuple, set)):
        return f"<redacted list len={len(value)}>"
    if isinstance(value, dict):
        return f"<redacted dict keys={len(value)}>"
    return "<redacted>"


def _truncate(value: str, limit: int = _MAX_LOGGED_STR) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + f"… <truncated len={len(value)}>"


def redact_tool_arguments(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    """Redact tool arguments for safe logging."""
    if not isinstance(args, dict):
        return {}
    return _redact_any(args, tool=tool, key=None)


def redact_jsonrpc_for_log(payload: dict[str, Any]) -> dict[str, Any]:
    """Shallow copy of a JSON-RPC frame with tool-call arguments redacted."""
    msg = dict(payload) if isinstance(payload, dict) else {}
    params = msg.get("params")
    if msg.get("method") == "tools/call" and isinstance(params, dict):
        name = params.get("name")
        args = params.get("arguments")
        if isinstance(name, str) and isinstance(args, dict):
            msg["params"] = {**params, "arguments": redact_tool_arguments(name, args)}
    return msg


def _redact_any(value: Any, *, tool: str, key: str | None) -> Any:
    if isinstance(value, dict):
        return {k: _redact_any(v, tool=tool, key=str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_any(v, tool=tool, key=key) for v in value]

    lk = (key or "").lower()
    if isinstance(value, str) and lk == "url":
        return redact_url(value)

    # Tool-specific redactions
    if tool == "browser_type" and lk == "text":
        return _redacted_summary(value)
    if tool in {"browser_evaluate", "capture_extension_errors"} and lk in {"script", "probe"} and isinstance(value, str):
        return _truncate(value)

    if is_sensitive_key(lk):
        return _redacted_summary(value)
    if isinstance(value, str):
        return _truncate(value)
    return value
