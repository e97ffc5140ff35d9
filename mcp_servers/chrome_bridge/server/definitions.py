"""Tool definitions advertised by `tools/list`.

The relay never interprets these; the browser agent owns the semantics
(see `agent_tools.py` for the routing table).
"""

from __future__ import annotations

from typing import Any


def _obj(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


def _tool(name: str, description: str, schema: dict[str, Any]) -> dict[str, Any]:
    return {"name": name, "description": description, "inputSchema": schema}


_STR = {"type": "string"}
_NUM = {"type": "number"}
_BOOL = {"type": "boolean"}
_TAB = {"type": "string", "description": "Target tab id (default: active tab)"}
_EXT = {"type": "string", "description": "Extension id"}

BROWSER_TOOLS = [
    _tool("browser_navigate", "Navigate to URL", _obj({"url": _STR}, ["url"])),
    _tool("browser_click", "Click element by CSS selector", _obj({"selector": _STR, "ref": _STR})),
    _tool("browser_type", "Type text into element", _obj({"selector": _STR, "ref": _STR, "text": _STR}, ["text"])),
    _tool("browser_snapshot", "Get page snapshot with interactive elements", _obj()),
    _tool(
        "browser_scroll",
        "Scroll page",
        _obj({"direction": {"type": "string", "enum": ["up", "down", "left", "right"]}, "amount": _NUM, "selector": _STR}),
    ),
    _tool("browser_hover", "Hover over element", _obj({"selector": _STR, "ref": _STR})),
    _tool(
        "browser_press_key",
        "Press a keyboard key (Enter, Escape, ArrowUp, ArrowDown, Tab, etc.)",
        _obj(
            {
                "key": {"type": "string", "description": "Key to press, or any character"},
                "selector": {"type": "string", "description": "Optional element selector to focus before pressing"},
                "modifiers": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["ctrl", "shift", "alt", "meta"]},
                    "description": "Modifier keys to hold",
                },
                "repeat": {"type": "number", "description": "Number of times to press the key"},
            },
            ["key"],
        ),
    ),
    _tool("browser_evaluate", "Run JavaScript code", _obj({"script": _STR}, ["script"])),
    _tool(
        "browser_wait",
        "Wait for a selector to appear or for a fixed time",
        _obj({"selector": _STR, "ms": _NUM, "timeout": _NUM}),
    ),
    _tool(
        "browser_screenshot",
        "Capture the visible part of the active tab",
        _obj({"format": {"type": "string", "enum": ["png", "jpeg"]}, "quality": _NUM}),
    ),
    _tool("get_page_info", "Get URL, title and basic state of the active tab", _obj()),
    _tool("get_element_info", "Get basic information about an element", _obj({"selector": _STR}, ["selector"])),
]

INSPECTION_TOOLS = [
    _tool(
        "inspect_element",
        "Deep inspect element - get computed styles, box model, attributes",
        _obj({"selector": _STR}, ["selector"]),
    ),
    _tool(
        "get_dom_tree",
        "Get DOM tree structure from element or document",
        _obj({"selector": _STR, "depth": {"type": "number", "default": 3}}),
    ),
    _tool(
        "get_computed_styles",
        "Get computed CSS styles for element",
        _obj({"selector": _STR, "properties": {"type": "array", "items": _STR}}, ["selector"]),
    ),
    _tool(
        "get_element_html",
        "Get innerHTML or outerHTML of element",
        _obj({"selector": _STR, "outer": {"type": "boolean", "default": True}}, ["selector"]),
    ),
    _tool(
        "query_all",
        "Find all elements matching selector",
        _obj({"selector": _STR, "limit": {"type": "number", "default": 20}}, ["selector"]),
    ),
    _tool("find_by_text", "Find elements containing text", _obj({"text": _STR, "tag": _STR}, ["text"])),
    _tool("get_attributes", "Get all attributes and data-* properties", _obj({"selector": _STR}, ["selector"])),
    _tool(
        "get_storage",
        "Get localStorage or sessionStorage contents",
        _obj({"type": {"type": "string", "enum": ["local", "session"], "default": "local"}}),
    ),
    _tool("get_cookies", "Get document cookies", _obj()),
    _tool("get_page_metrics", "Get page performance metrics, element counts, memory", _obj()),
]

EXTENSION_TOOLS = [
    _tool(
        "list_extensions",
        "List all installed extensions",
        _obj({"includeDisabled": {"type": "boolean", "default": True}}),
    ),
    _tool("get_extension_info", "Get detailed info about an extension", _obj({"extensionId": _EXT}, ["extensionId"])),
    _tool(
        "reload_extension",
        'Reload an extension by ID (toggle off/on). Use "self" to reload the bridge itself',
        _obj({"extensionId": _EXT}, ["extensionId"]),
    ),
    _tool("enable_extension", "Enable an extension by ID", _obj({"extensionId": _EXT}, ["extensionId"])),
    _tool("disable_extension", "Disable an extension by ID", _obj({"extensionId": _EXT}, ["extensionId"])),
]

DEBUG_TOOLS = [
    _tool("debugger_attach", "Attach the debugger to a tab (idempotent)", _obj({"tabId": _TAB})),
    _tool("debugger_detach", "Detach the debugger from a tab", _obj({"tabId": _TAB})),
    _tool(
        "cdp_send",
        "Send a raw debugging protocol command; the domain is enabled automatically on first use",
        _obj({"method": _STR, "params": {"type": "object"}, "tabId": _TAB}, ["method"]),
    ),
    _tool(
        "get_console_logs",
        "Get console messages and exceptions captured for a tab",
        _obj({"tabId": _TAB, "limit": _NUM, "level": _STR}),
    ),
    _tool(
        "get_network_log",
        "Get network requests captured for a tab (correlated by request id)",
        _obj({"tabId": _TAB, "limit": _NUM, "failedOnly": _BOOL}),
    ),
    _tool("get_animations", "Get animation events captured for a tab", _obj({"tabId": _TAB, "limit": _NUM})),
    _tool(
        "get_dom_mutations",
        "Get DOM mutation events captured for a tab (rapid repeats on one node are suppressed)",
        _obj({"tabId": _TAB, "limit": _NUM, "requestDocument": _BOOL}),
    ),
    _tool(
        "capture_extension_errors",
        "Open an extension page, observe it for a while and collect its errors and console output",
        _obj(
            {
                "extensionId": _EXT,
                "path": {"type": "string", "default": "popup.html"},
                "waitMs": {"type": "number", "default": 2000},
                "probe": {"type": "boolean", "default": True},
                "closePage": {"type": "boolean", "default": True},
            },
            ["extensionId"],
        ),
    ),
    _tool(
        "get_extension_errors",
        "Get errors and console entries collected for an extension",
        _obj({"extensionId": _EXT, "limit": _NUM}, ["extensionId"]),
    ),
    _tool("clear_extension_errors", "Clear the stored errors of an extension", _obj({"extensionId": _EXT}, ["extensionId"])),
    _tool(
        "snapshot_extension_state",
        "Record a named marker of an extension's current state",
        _obj({"extensionId": _EXT, "key": {"type": "string", "default": "default"}}, ["extensionId"]),
    ),
    _tool(
        "diff_extension_state",
        "Compare an extension's current state against a recorded marker",
        _obj({"extensionId": _EXT, "key": {"type": "string", "default": "default"}}, ["extensionId"]),
    ),
]

TOOL_DEFINITIONS: list[dict[str, Any]] = [*BROWSER_TOOLS, *INSPECTION_TOOLS, *EXTENSION_TOOLS, *DEBUG_TOOLS]
