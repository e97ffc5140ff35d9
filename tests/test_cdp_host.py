from __future__ import annotations

import asyncio
from typing import Any

from mcp_servers.chrome_bridge.browser_host import CdpBrowserHost
from mcp_servers.chrome_bridge.errors import HostError


class _ScriptedHost(CdpBrowserHost):
    """CdpBrowserHost with the browser connection replaced by canned replies."""

    def __init__(self) -> None:
        super().__init__("http://127.0.0.1:9222")
        self.calls: list[tuple[str, dict[str, Any], str | None]] = []
        self.fail: set[str] = set()

    async def _call(self, method: str, params: dict[str, Any] | None = None, *, session_id: str | None = None) -> Any:
        self.calls.append((method, dict(params or {}), session_id))
        if method in self.fail:
            raise HostError(f"{method} failed")
        if method == "Target.getTargets":
            return {
                "targetInfos": [
                    {"targetId": "t1", "type": "page", "url": "https://example.com/"},
                    {"targetId": "w1", "type": "service_worker", "url": "chrome-extension://abc/bg.js", "title": "Helper"},
                ]
            }
        if method == "Target.attachToTarget":
            return {"sessionId": "s-" + params["targetId"]}
        return {}


def test_reload_extension_detaches_its_worker_session() -> None:
    async def _main() -> None:
        host = _ScriptedHost()
        # The worker is torn down by the reload, so the evaluate never answers.
        host.fail.add("Runtime.evaluate")
        res = await host.reload_extension("abc")

        assert res["success"] is True
        assert res["extension"] == {"id": "abc", "name": "Helper", "enabled": True}
        methods = [m for m, _p, _s in host.calls]
        assert methods == ["Target.getTargets", "Target.attachToTarget", "Runtime.evaluate", "Target.detachFromTarget"]
        assert host.calls[2][2] == "s-w1"
        assert host.calls[3][1] == {"sessionId": "s-w1"}

    asyncio.run(_main())


def test_reload_extension_tolerates_a_failed_detach() -> None:
    async def _main() -> None:
        host = _ScriptedHost()
        host.fail.add("Target.detachFromTarget")
        res = await host.reload_extension("abc")
        assert res["success"] is True
        assert [m for m, _p, _s in host.calls][-1] == "Target.detachFromTarget"

    asyncio.run(_main())
