"""Registry of live MCP tool-server connections keyed by server name.

Connections are built from the session's selected `ServerSpec` subset using
pydantic-ai MCP clients over stdio, SSE or streamable HTTP. Bring-up is
partial-success: a server that fails to connect is logged and left out.

The active map is copy-on-replace and guarded reader/writer style: tool listing
and calls are readers and may overlap, while `replace()` and `close()` are
writers that wait for in-flight readers to drain and hold new readers back until
the new mapping is published in a single assignment.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Sequence

from pydantic_ai import mcp as mcp_client  # type: ignore
from pydantic_ai.exceptions import ModelRetry  # type: ignore

from panepilot.config import ServerSpec
from panepilot.errors import ToolError, ToolNotFound, ToolTimeout
from panepilot.log_utils import log_context, log_event

logger = logging.getLogger(__name__)

DEFAULT_LIST_TIMEOUT_S = 10.0
DEFAULT_CALL_TIMEOUT_S = 30.0
SUPPORTED_TRANSPORTS = ("stdio", "sse", "streamable-http")


@dataclass(frozen=True)
class ToolInfo:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


class ToolServerConnection(Protocol):
    name: str

    async def list_tools(self) -> list[ToolInfo]: ...

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str: ...

    async def close(self) -> None: ...


Connector = Callable[[ServerSpec], Awaitable[ToolServerConnection]]


def build_mcp_server(spec: ServerSpec) -> Any:
    """Construct the pydantic-ai MCP client for a spec (not yet connected)."""

    if spec.type == "stdio":
        if not spec.command:
            raise ValueError(f"stdio server '{spec.name}' has no command")
        return mcp_client.MCPServerStdio(
            spec.command,
            list(spec.args),
            env=dict(spec.env) or None,
            id=spec.name,
        )
    if spec.type == "sse":
        if not spec.url:
            raise ValueError(f"sse server '{spec.name}' has no url")
        return mcp_client.MCPServerSSE(spec.url, headers=dict(spec.headers) or None, id=spec.name)
    if spec.type == "streamable-http":
        if not spec.url:
            raise ValueError(f"streamable-http server '{spec.name}' has no url")
        return mcp_client.MCPServerStreamableHTTP(spec.url, headers=dict(spec.headers) or None, id=spec.name)
    raise ValueError(f"unsupported MCP server type '{spec.type}' for server '{spec.name}'")


def _result_text(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, (list, tuple)) and result and all(isinstance(item, str) for item in result):
        return "\n".join(result)
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class McpServerConnection:
    """An entered pydantic-ai MCP server bound to one spec."""

    def __init__(self, spec: ServerSpec, server: Any) -> None:
        self.name = spec.name
        self.spec = spec
        self._server = server

    async def list_tools(self) -> list[ToolInfo]:
        tools = await self._server.list_tools()
        return [
            ToolInfo(
                name=tool.name,
                description=getattr(tool, "description", None) or "",
                input_schema=dict(getattr(tool, "inputSchema", None) or {}),
            )
            for tool in tools
        ]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        try:
            result = await self._server.direct_call_tool(tool_name, arguments)
        except ModelRetry as exc:
            # pydantic-ai reports MCP `isError` results as ModelRetry.
            raise ToolError(self.name, f"tool execution error: {exc.message}") from exc
        return _result_text(result)

    async def close(self) -> None:
        await self._server.__aexit__(None, None, None)


async def connect_mcp_server(spec: ServerSpec) -> McpServerConnection:
    server = build_mcp_server(spec)
    await server.__aenter__()
    return McpServerConnection(spec, server)


class ToolClientRegistry:
    def __init__(
        self,
        *,
        connector: Connector = connect_mcp_server,
        list_timeout: float = DEFAULT_LIST_TIMEOUT_S,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_S,
    ) -> None:
        self._connector = connector
        self.list_timeout = list_timeout
        self.call_timeout = call_timeout
        self._connections: Mapping[str, ToolServerConnection] = MappingProxyType({})
        self._specs: Mapping[str, ServerSpec] = MappingProxyType({})
        self._catalog: dict[str, list[ToolInfo]] = {}
        self._write_lock = asyncio.Lock()
        self._readers = 0
        self._no_readers = asyncio.Event()
        self._no_readers.set()
        self._writer_active = False
        self._writer_done = asyncio.Event()
        self._writer_done.set()

    @property
    def server_names(self) -> list[str]:
        return list(self._connections)

    def is_connected(self, server_name: str) -> bool:
        return server_name in self._connections

    @contextlib.asynccontextmanager
    async def _reading(self) -> AsyncIterator[None]:
        while self._writer_active:
            await self._writer_done.wait()
        self._readers += 1
        self._no_readers.clear()
        try:
            yield
        finally:
            self._readers -= 1
            if not self._readers:
                self._no_readers.set()

    @contextlib.asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        async with self._write_lock:
            self._writer_active = True
            self._writer_done.clear()
            try:
                await self._no_readers.wait()
                yield
            finally:
                self._writer_active = False
                self._writer_done.set()

    def _lookup(self, server_name: str) -> ToolServerConnection:
        conn = self._connections.get(server_name)
        if conn is None:
            raise ToolNotFound(server_name, f"MCP server '{server_name}' not found")
        return conn

    async def describe_tools(self, server_name: str) -> list[ToolInfo]:
        async with self._reading():
            return await self._describe_tools(server_name)

    async def _describe_tools(self, server_name: str) -> list[ToolInfo]:
        conn = self._lookup(server_name)
        try:
            async with asyncio.timeout(self.list_timeout):
                tools = await conn.list_tools()
        except TimeoutError as exc:
            raise ToolTimeout(
                server_name, f"listing tools on '{server_name}' timed out after {self.list_timeout:g}s"
            ) from exc
        except (ToolNotFound, ToolTimeout, ToolError):
            raise
        except Exception as exc:  # noqa: BLE001 - remote failure surfaces as ToolError
            raise ToolError(server_name, f"failed to list tools for server '{server_name}': {exc}") from exc
        self._catalog[server_name] = tools
        return tools

    async def list_tools(self, server_name: str) -> list[str]:
        return [tool.name for tool in await self.describe_tools(server_name)]

    async def call_tool(self, server_name: str, tool_name: str, arguments: dict[str, Any] | None = None) -> str:
        async with self._reading():
            return await self._call_tool(server_name, tool_name, arguments)

    async def _call_tool(self, server_name: str, tool_name: str, arguments: dict[str, Any] | None) -> str:
        conn = self._lookup(server_name)
        spec = self._specs.get(server_name)
        timeout = spec.timeout if spec is not None and spec.timeout else self.call_timeout
        with log_context(server=server_name, tool=tool_name):
            log_event(logger, "mcp.call.start", args_keys=sorted(arguments or {}))
            try:
                async with asyncio.timeout(timeout):
                    result = await conn.call_tool(tool_name, dict(arguments or {}))
            except TimeoutError as exc:
                log_event(logger, "mcp.call.timeout", level=logging.WARNING, timeout_s=timeout)
                raise ToolTimeout(
                    server_name, f"tool '{tool_name}' on '{server_name}' timed out after {timeout:g}s"
                ) from exc
            except ToolError:
                log_event(logger, "mcp.call.error", level=logging.WARNING)
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(logger, "mcp.call.error", level=logging.WARNING, error=str(exc))
                raise ToolError(
                    server_name, f"failed to call tool '{tool_name}' on server '{server_name}': {exc}"
                ) from exc
            log_event(logger, "mcp.call.complete", result_chars=len(result))
        return result

    async def tool_catalog(self) -> dict[str, list[ToolInfo]]:
        """Return tool descriptions per active server, skipping failing servers."""

        catalog: dict[str, list[ToolInfo]] = {}
        for name in self._connections:
            cached = self._catalog.get(name)
            if cached is not None:
                catalog[name] = cached
                continue
            try:
                catalog[name] = await self.describe_tools(name)
            except (ToolNotFound, ToolTimeout, ToolError) as exc:
                log_event(logger, "mcp.catalog.skip", level=logging.WARNING, server=name, error=str(exc))
        return catalog

    async def _connect(self, spec: ServerSpec) -> ToolServerConnection | None:
        if spec.type not in SUPPORTED_TRANSPORTS:
            log_event(logger, "mcp.connect.unsupported", level=logging.ERROR, server=spec.name, type=spec.type)
            return None
        last_error: Exception | None = None
        for attempt in range(spec.retry_count + 1):
            try:
                conn = await self._connector(spec)
            except Exception as exc:  # noqa: BLE001 - one server must not abort bring-up
                last_error = exc
                log_event(
                    logger,
                    "mcp.connect.failed",
                    level=logging.WARNING,
                    server=spec.name,
                    attempt=attempt + 1,
                    error=str(exc),
                )
                continue
            log_event(logger, "mcp.connect.ok", server=spec.name, type=spec.type)
            return conn
        log_event(logger, "mcp.connect.gave_up", level=logging.ERROR, server=spec.name, error=str(last_error))
        return None

    @staticmethod
    async def _close_all(connections: Mapping[str, ToolServerConnection]) -> None:
        for name, conn in connections.items():
            try:
                await conn.close()
            except Exception as exc:  # noqa: BLE001 - keep closing the rest
                log_event(logger, "mcp.close.failed", level=logging.WARNING, server=name, error=str(exc))

    async def close(self) -> None:
        async with self._writing():
            await self._close_all(self._connections)
            self._publish({}, {})

    def _publish(self, connections: dict[str, ToolServerConnection], specs: dict[str, ServerSpec]) -> None:
        self._catalog = {}
        self._specs = MappingProxyType(specs)
        self._connections = MappingProxyType(connections)

    async def replace(self, specs: Sequence[ServerSpec]) -> list[str]:
        """Close every connection, then connect `specs` and publish the new set.

        Returns the names of servers that came up.
        """

        async with self._writing():
            await self._close_all(self._connections)
            connections: dict[str, ToolServerConnection] = {}
            spec_map: dict[str, ServerSpec] = {}
            for spec in specs:
                if spec.name in connections:
                    log_event(logger, "mcp.connect.duplicate", level=logging.WARNING, server=spec.name)
                    continue
                conn = await self._connect(spec)
                if conn is None:
                    continue
                connections[spec.name] = conn
                spec_map[spec.name] = spec
            self._publish(connections, spec_map)
        return list(connections)
