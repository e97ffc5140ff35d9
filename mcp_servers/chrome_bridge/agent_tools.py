"""
Tool routing table for the browser agent.

Each tool maps to an async handler plus its policy: which permission toggle
it needs and whether it operates on a tab. Gating happens in the dispatcher.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .browser_host import BrowserHost
from .debug_sessions import DebugSessionManager
from .error_capture import ErrorCapture, require_extension_id
from .errors import ToolExecutionError
from .event_store import EventStoreRegistry
from .state_markers import StateMarkers

logger = logging.getLogger("mcp.chrome_bridge.agent")


@dataclass
class AgentContext:
    """Everything a tool handler can touch."""

    host: BrowserHost
    stores: EventStoreRegistry
    debug: DebugSessionManager
    capture: ErrorCapture
    markers: StateMarkers
    # Id of the extension the agent itself runs in, hidden from list_extensions.
    self_extension_id: str | None = None


# handler(ctx, tab_id, params); tab_id is None for tools that skip tab resolution
HandlerFunc = Callable[[AgentContext, "str | None", dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    handler: HandlerFunc
    permission: str | None = None
    needs_target: bool = True


class ToolRegistry:
    """Registry for agent tool handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: HandlerFunc,
        *,
        permission: str | None = None,
        needs_target: bool = True,
    ) -> None:
        """Register a tool handler."""
        self._handlers[name] = ToolSpec(handler, permission, needs_target)

    def get(self, name: str) -> ToolSpec | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, name: str, ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
        spec = self._handlers.get(name)
        if spec is None:
            raise ToolExecutionError(f"Unknown tool: {name}")
        return await spec.handler(ctx, tab_id, params)


# ═══════════════════════════════════════════════════════════════════════════════
# Policy tables
# ═══════════════════════════════════════════════════════════════════════════════

NO_PRIVILEGE_TOOLS = frozenset({"browser_snapshot", "get_page_info"})

NO_TARGET_TOOLS = frozenset(
    {
        "list_extensions",
        "get_extension_info",
        "reload_extension",
        "enable_extension",
        "disable_extension",
        "capture_extension_errors",
        "get_extension_errors",
        "clear_extension_errors",
        "snapshot_extension_state",
        "diff_extension_state",
    }
)

TOOL_PERMISSIONS: dict[str, str] = {
    "browser_navigate": "navigation",
    "browser_screenshot": "screenshot",
    "browser_evaluate": "scripts",
    "cdp_send": "scripts",
    "browser_click": "mouse",
    "browser_hover": "mouse",
    "browser_scroll": "mouse",
    "browser_type": "keyboard",
    "browser_press_key": "keyboard",
}

PERMISSION_MESSAGES = {
    "navigation": "Navigation not permitted",
    "screenshot": "Screenshots not permitted",
    "scripts": "Script execution not permitted",
    "mouse": "Mouse control not permitted",
    "keyboard": "Keyboard control not permitted",
}


# ═══════════════════════════════════════════════════════════════════════════════
# Content-script actions
# ═══════════════════════════════════════════════════════════════════════════════


def _target(params: dict[str, Any]) -> Any:
    return params.get("selector") or params.get("ref")


def _click(p: dict[str, Any]) -> dict[str, Any]:
    return {"type": "CLICK", "selector": _target(p), "options": p}


def _type(p: dict[str, Any]) -> dict[str, Any]:
    return {"type": "TYPE", "selector": _target(p), "text": p.get("text"), "options": p}


def _scroll(p: dict[str, Any]) -> dict[str, Any]:
    return {"type": "SCROLL", "selector": p.get("selector") or "window", "options": p}


def _hover(p: dict[str, Any]) -> dict[str, Any]:
    return {"type": "HOVER", "selector": _target(p)}


def _press_key(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "PRESS_KEY",
        "key": p.get("key"),
        "selector": _target(p),
        "modifiers": p.get("modifiers") or [],
        "repeat": p.get("repeat") or 1,
    }


def _evaluate(p: dict[str, Any]) -> dict[str, Any]:
    return {"type": "EVALUATE", "script": p.get("script") or p.get("code")}


def _wait(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "WAIT",
        "selector": p.get("selector"),
        "text": p.get("text"),
        "ms": p.get("ms") or p.get("time"),
        "timeout": p.get("timeout"),
    }


CONTENT_ACTIONS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "browser_click": _click,
    "browser_type": _type,
    "browser_scroll": _scroll,
    "browser_hover": _hover,
    "browser_press_key": _press_key,
    "browser_snapshot": lambda p: {"type": "GET_SNAPSHOT"},
    "browser_evaluate": _evaluate,
    "browser_wait": _wait,
    "get_page_info": lambda p: {"type": "GET_PAGE_STATE"},
    "get_element_info": lambda p: {"type": "GET_ELEMENT_INFO", "selector": p.get("selector")},
    "inspect_element": lambda p: {"type": "INSPECT_ELEMENT", "selector": p.get("selector")},
    "get_dom_tree": lambda p: {"type": "GET_DOM_TREE", "selector": p.get("selector"), "depth": p.get("depth") or 3},
    "get_computed_styles": lambda p: {
        "type": "GET_COMPUTED_STYLES",
        "selector": p.get("selector"),
        "properties": p.get("properties"),
    },
    "get_element_html": lambda p: {
        "type": "GET_ELEMENT_HTML",
        "selector": p.get("selector"),
        "outer": p.get("outer") is not False,
    },
    "query_all": lambda p: {"type": "QUERY_ALL", "selector": p.get("selector"), "limit": p.get("limit") or 20},
    "find_by_text": lambda p: {"type": "FIND_BY_TEXT", "text": p.get("text"), "tag": p.get("tag")},
    "get_attributes": lambda p: {"type": "GET_ATTRIBUTES", "selector": p.get("selector")},
    "get_storage": lambda p: {"type": "GET_STORAGE", "storageType": p.get("type") or "local"},
    "get_cookies": lambda p: {"type": "GET_COOKIES"},
    "get_page_metrics": lambda p: {"type": "GET_PAGE_METRICS"},
}


def _forward(build: Callable[[dict[str, Any]], dict[str, Any]]) -> HandlerFunc:
    async def handler(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
        return await ctx.host.run_content_action(tab_id, build(params))

    return handler


# ═══════════════════════════════════════════════════════════════════════════════
# Host-direct handlers
# ═══════════════════════════════════════════════════════════════════════════════


async def _navigate(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    url = params.get("url")
    if not isinstance(url, str) or not url:
        raise ToolExecutionError("url is required")
    return await ctx.host.navigate(tab_id, url)


async def _screenshot(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.host.capture_screenshot(
        tab_id,
        format=str(params.get("format") or "png"),
        quality=int(params.get("quality") or 90),
    )


async def _list_extensions(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    include_disabled = params.get("includeDisabled") is not False
    items = await ctx.host.list_extensions(include_disabled=include_disabled)
    return [
        ext
        for ext in items
        if ext.get("id") != ctx.self_extension_id and (include_disabled or ext.get("enabled", True))
    ]


async def _extension_info(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.host.get_extension(require_extension_id(params))


async def _reload_extension(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.host.reload_extension(require_extension_id(params))


async def _enable_extension(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.host.set_extension_enabled(require_extension_id(params), True)


async def _disable_extension(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.host.set_extension_enabled(require_extension_id(params), False)


# ═══════════════════════════════════════════════════════════════════════════════
# Debug session handlers
# ═══════════════════════════════════════════════════════════════════════════════


def _tab(tab_id: str | None, params: dict[str, Any]) -> str:
    explicit = params.get("tabId")
    if explicit is not None and str(explicit):
        return str(explicit)
    if tab_id is None:
        raise ToolExecutionError("tabId is required")
    return tab_id


def _limit(params: dict[str, Any], default: int = 100) -> int:
    try:
        return max(1, int(params.get("limit") or default))
    except (TypeError, ValueError):
        return default


async def _debugger_attach(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.debug.attach(_tab(tab_id, params))


async def _debugger_detach(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return await ctx.debug.detach(_tab(tab_id, params))


async def _cdp_send(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    method = params.get("method")
    if not isinstance(method, str) or not method:
        raise ToolExecutionError("method is required")
    cmd_params = params.get("params")
    result = await ctx.debug.send_command(_tab(tab_id, params), method, cmd_params if isinstance(cmd_params, dict) else {})
    return {"success": True, "method": method, "result": result}


async def _console_logs(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    tab = _tab(tab_id, params)
    await ctx.debug.ensure_domains(tab, ("Runtime", "Log"))
    level = params.get("level") if isinstance(params.get("level"), str) else None
    entries = ctx.stores.tab(tab).console_entries(limit=_limit(params), level=level)
    return {"tabId": tab, "count": len(entries), "entries": entries}


async def _network_log(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    tab = _tab(tab_id, params)
    await ctx.debug.ensure_domains(tab, ("Network",))
    store = ctx.stores.tab(tab)
    entries = store.network_entries(limit=_limit(params), failed_only=bool(params.get("failedOnly")))
    return {"tabId": tab, "count": len(entries), "inFlight": store.in_flight, "entries": entries}


async def _animations(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    tab = _tab(tab_id, params)
    await ctx.debug.ensure_domains(tab, ("Animation",))
    entries = ctx.stores.tab(tab).animation_entries(limit=_limit(params))
    return {"tabId": tab, "count": len(entries), "entries": entries}


async def _dom_mutations(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    tab = _tab(tab_id, params)
    await ctx.debug.ensure_domains(tab, ("DOM",))
    if params.get("requestDocument"):
        # The browser only reports mutations for nodes the debugger has already seen.
        await ctx.debug.send_command(tab, "DOM.getDocument", {"depth": -1})
    entries = ctx.stores.tab(tab).dom_entries(limit=_limit(params))
    return {"tabId": tab, "count": len(entries), "entries": entries}


# ═══════════════════════════════════════════════════════════════════════════════
# Extension error capture / state markers
# ═══════════════════════════════════════════════════════════════════════════════


async def _capture_errors(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    wait_ms = params.get("waitMs")
    return await ctx.capture.capture(
        require_extension_id(params),
        path=str(params.get("path") or "popup.html"),
        wait_s=(float(wait_ms) / 1000.0) if isinstance(wait_ms, (int, float)) else None,
        probe=params.get("probe") is not False,
        close_page=params.get("closePage") is not False,
    )


async def _get_extension_errors(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return ctx.stores.extension(require_extension_id(params)).snapshot(limit=_limit(params))


async def _clear_extension_errors(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    ext_id = require_extension_id(params)
    return {"success": True, "extensionId": ext_id, "cleared": ctx.stores.clear_extension(ext_id)}


async def _snapshot_state(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return ctx.markers.snapshot(require_extension_id(params), params.get("key"))


async def _diff_state(ctx: AgentContext, tab_id: str | None, params: dict[str, Any]) -> Any:
    return ctx.markers.diff(require_extension_id(params), params.get("key"))


_DIRECT_HANDLERS: dict[str, HandlerFunc] = {
    "browser_navigate": _navigate,
    "browser_screenshot": _screenshot,
    "list_extensions": _list_extensions,
    "get_extension_info": _extension_info,
    "reload_extension": _reload_extension,
    "enable_extension": _enable_extension,
    "disable_extension": _disable_extension,
    "debugger_attach": _debugger_attach,
    "debugger_detach": _debugger_detach,
    "cdp_send": _cdp_send,
    "get_console_logs": _console_logs,
    "get_network_log": _network_log,
    "get_animations": _animations,
    "get_dom_mutations": _dom_mutations,
    "capture_extension_errors": _capture_errors,
    "get_extension_errors": _get_extension_errors,
    "clear_extension_errors": _clear_extension_errors,
    "snapshot_extension_state": _snapshot_state,
    "diff_extension_state": _diff_state,
}


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    handlers: dict[str, HandlerFunc] = {name: _forward(build) for name, build in CONTENT_ACTIONS.items()}
    handlers.update(_DIRECT_HANDLERS)
    for name, handler in handlers.items():
        registry.register(
            name,
            handler,
            permission=TOOL_PERMISSIONS.get(name),
            needs_target=name not in NO_TARGET_TOOLS,
        )
    logger.debug("registered %d agent tools", len(handlers))
    return registry
