"""
Type definitions for MCP tool responses.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

MAX_SNAPSHOT_ELEMENTS = 30
MAX_ELEMENT_TEXT = 30


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 for images
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP content format."""
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a relayed tool call, rendered for the client."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")])

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=f"Error: {message}")], is_error=True)

    @classmethod
    def json(cls, data: Any) -> ToolResult:
        return cls.text(json.dumps(data, indent=2, ensure_ascii=False, default=str))

    @classmethod
    def from_agent_result(cls, result: Any) -> ToolResult:
        """Render whatever the browser agent returned.

        - `{"error": msg}` -> "Error: msg" (flagged as error)
        - a page snapshot (has `elements`) -> URL/title header plus the first elements
        - anything else -> pretty JSON
        """
        if isinstance(result, dict):
            err = result.get("error")
            if err:
                return cls.error(str(err))
            elements = result.get("elements")
            if isinstance(elements, list):
                return cls.text(render_snapshot(result))
        return cls.json(result)

    def to_content_list(self) -> list[dict[str, Any]]:
        """Convert to MCP content list format."""
        return [c.to_dict() for c in self.content]


def render_snapshot(snapshot: dict[str, Any]) -> str:
    lines = [f"URL: {snapshot.get('url')}", f"Title: {snapshot.get('title')}", "", "Elements:"]
    for el in (snapshot.get("elements") or [])[:MAX_SNAPSHOT_ELEMENTS]:
        if not isinstance(el, dict):
            continue
        text = str(el.get("text") or "")[:MAX_ELEMENT_TEXT]
        lines.append(f"[{el.get('ref')}] <{el.get('tag')}> {text}")
    return "\n".join(lines) + "\n"
