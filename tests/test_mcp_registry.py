from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from panepilot.agent.mcp_registry import ToolClientRegistry, build_mcp_server
from panepilot.config import ServerSpec
from panepilot.errors import ToolError, ToolNotFound, ToolTimeout
from tests.utils import FakeConnection, make_connector


def _spec(name: str, **kwargs: Any) -> ServerSpec:
    return ServerSpec(name=name, command="server-bin", **kwargs)


@pytest.mark.asyncio
async def test_partial_bring_up_skips_failing_server(caplog) -> None:
    conns = {"a": FakeConnection("a"), "c": FakeConnection("c")}
    registry = ToolClientRegistry(connector=make_connector(conns, failing=["b"]))

    with caplog.at_level(logging.WARNING):
        connected = await registry.replace([_spec("a"), _spec("b"), _spec("c")])

    assert connected == ["a", "c"]
    assert registry.server_names == ["a", "c"]
    assert "mcp.connect.failed" in caplog.text


@pytest.mark.asyncio
async def test_unsupported_transport_is_left_out() -> None:
    conns = {"a": FakeConnection("a"), "weird": FakeConnection("weird")}
    connector = make_connector(conns)
    registry = ToolClientRegistry(connector=connector)

    connected = await registry.replace([_spec("a"), ServerSpec(name="weird", type="websocket")])

    assert connected == ["a"]
    assert "weird" not in connector.attempts


@pytest.mark.asyncio
async def test_retry_count_adds_connection_attempts() -> None:
    connector = make_connector({}, failing=["flaky"])
    registry = ToolClientRegistry(connector=connector)

    assert await registry.replace([_spec("flaky", retry_count=2)]) == []
    assert connector.attempts["flaky"] == 3


@pytest.mark.asyncio
async def test_unknown_server_raises_not_found() -> None:
    registry = ToolClientRegistry(connector=make_connector({}))

    with pytest.raises(ToolNotFound):
        await registry.list_tools("missing")
    with pytest.raises(ToolNotFound):
        await registry.call_tool("missing", "echo", {})


@pytest.mark.asyncio
async def test_list_and_call_tools() -> None:
    conn = FakeConnection("docs", {"search": "3 hits", "fetch": "page"})
    registry = ToolClientRegistry(connector=make_connector({"docs": conn}))
    await registry.replace([_spec("docs")])

    assert await registry.list_tools("docs") == ["search", "fetch"]
    assert await registry.call_tool("docs", "search", {"q": "tar"}) == "3 hits"
    assert conn.calls == [("search", {"q": "tar"})]


@pytest.mark.asyncio
async def test_remote_error_surfaces_as_tool_error() -> None:
    registry = ToolClientRegistry(connector=make_connector({"docs": FakeConnection("docs")}))
    await registry.replace([_spec("docs")])

    with pytest.raises(ToolError) as excinfo:
        await registry.call_tool("docs", "nope", {})

    assert excinfo.value.server_name == "docs"
    assert "unknown tool nope" in str(excinfo.value)


class _HangingConnection(FakeConnection):
    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        await asyncio.sleep(10)
        return "late"

    async def list_tools(self):
        await asyncio.sleep(10)
        return []


@pytest.mark.asyncio
async def test_hung_server_times_out_without_blocking_others() -> None:
    conns = {"slow": _HangingConnection("slow"), "fast": FakeConnection("fast")}
    registry = ToolClientRegistry(connector=make_connector(conns), list_timeout=0.05, call_timeout=0.05)
    await registry.replace([_spec("slow"), _spec("fast")])

    slow_call = asyncio.create_task(registry.call_tool("slow", "echo", {}))
    assert await registry.call_tool("fast", "echo", {}) == "ok"
    with pytest.raises(ToolTimeout):
        await slow_call
    with pytest.raises(ToolTimeout):
        await registry.list_tools("slow")


@pytest.mark.asyncio
async def test_per_server_timeout_overrides_default() -> None:
    registry = ToolClientRegistry(connector=make_connector({"slow": _HangingConnection("slow")}), call_timeout=30)
    await registry.replace([_spec("slow", timeout=0.05)])

    with pytest.raises(ToolTimeout, match="0.05s"):
        await registry.call_tool("slow", "echo", {})


@pytest.mark.asyncio
async def test_close_tolerates_individual_failures() -> None:
    bad = FakeConnection("bad", close_error=True)
    good = FakeConnection("good")
    registry = ToolClientRegistry(connector=make_connector({"bad": bad, "good": good}))
    await registry.replace([_spec("bad"), _spec("good")])

    await registry.close()

    assert bad.closed and good.closed
    assert registry.server_names == []


@pytest.mark.asyncio
async def test_replace_swaps_active_set() -> None:
    first = FakeConnection("first")
    second = FakeConnection("second")
    registry = ToolClientRegistry(connector=make_connector({"first": first, "second": second}))
    await registry.replace([_spec("first")])

    connected = await registry.replace([_spec("second"), _spec("second")])

    assert connected == ["second"]
    assert first.closed
    assert not registry.is_connected("first")
    with pytest.raises(ToolNotFound):
        await registry.call_tool("first", "echo", {})


class _SlowConnection(FakeConnection):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.closed_mid_call = False

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        await asyncio.sleep(0.1)
        self.closed_mid_call = self.closed
        return "finished"


@pytest.mark.asyncio
async def test_replace_waits_for_in_flight_calls() -> None:
    slow = _SlowConnection("slow")
    registry = ToolClientRegistry(connector=make_connector({"slow": slow}))
    await registry.replace([_spec("slow")])

    call = asyncio.create_task(registry.call_tool("slow", "echo", {}))
    await asyncio.sleep(0.01)
    await registry.replace([])

    assert call.done()
    assert await call == "finished"
    assert not slow.closed_mid_call
    assert slow.closed


@pytest.mark.asyncio
async def test_calls_during_replace_see_the_new_set() -> None:
    conns = {"first": FakeConnection("first"), "second": FakeConnection("second")}
    connect = make_connector(conns)

    async def _slow_connect(spec: ServerSpec) -> FakeConnection:
        await asyncio.sleep(0.05)
        return await connect(spec)

    registry = ToolClientRegistry(connector=_slow_connect)
    await registry.replace([_spec("first")])

    swap = asyncio.create_task(registry.replace([_spec("second")]))
    await asyncio.sleep(0.01)
    result = await registry.call_tool("second", "echo", {})

    assert swap.done()
    assert result == "ok"
    assert conns["second"].calls == [("echo", {})]


@pytest.mark.asyncio
async def test_tool_catalog_skips_failing_servers() -> None:
    conns = {"slow": _HangingConnection("slow"), "fast": FakeConnection("fast", {"grep": "x"})}
    registry = ToolClientRegistry(connector=make_connector(conns), list_timeout=0.05)
    await registry.replace([_spec("slow"), _spec("fast")])

    catalog = await registry.tool_catalog()

    assert list(catalog) == ["fast"]
    assert catalog["fast"][0].name == "grep"


def test_build_mcp_server_validates_spec() -> None:
    with pytest.raises(ValueError):
        build_mcp_server(ServerSpec(name="x", type="stdio"))
    with pytest.raises(ValueError):
        build_mcp_server(ServerSpec(name="x", type="sse"))
    with pytest.raises(ValueError):
        build_mcp_server(ServerSpec(name="x", type="carrier-pigeon", url="http://x"))
