"""Registry of connected tool servers, routing calls by tool name."""

from typing import Any, Dict, List, Mapping, Optional

from .errors import ToolErrorKind, ToolExecutionError, TransportError
from .logger import get_logger
from .mcp_client import (
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    MCPClient,
    MCPServerConfig,
    MCPTool,
)
from .tools.result import ToolResult

log = get_logger("mcp")


class RemoteToolRegistry:
    """Named MCPClients plus the tools each one listed at connect time."""

    def __init__(
        self,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
    ):
        self.request_timeout = request_timeout
        self.handshake_timeout = handshake_timeout
        self._clients: Dict[str, MCPClient] = {}
        self._tools: Dict[str, List[MCPTool]] = {}

    def _make_client(self, name: str, config: MCPServerConfig) -> MCPClient:
        return MCPClient(name, config,
                         request_timeout=self.request_timeout,
                         handshake_timeout=self.handshake_timeout)

    async def connect_server(self, name: str, config: MCPServerConfig) -> List[MCPTool]:
        """(Re)connect a server and cache its tool list.

        Raises:
            TransportError: If the server cannot be started or initialized.
        """
        if name in self._clients:
            await self.disconnect_server(name)

        client = self._make_client(name, config)
        await client.connect()
        try:
            tools = await client.list_tools()
        except TransportError:
            await client.disconnect()
            raise
        for tool in tools:
            tool.server_name = name
        self._clients[name] = client
        self._tools[name] = tools
        log.info("Connected MCP server '%s' with tools: %s", name,
                 ", ".join(t.name for t in tools) or "(none)")
        return tools

    async def connect_all(self, servers: Mapping[str, MCPServerConfig]) -> Dict[str, List[MCPTool]]:
        """Connect every configured server.

        A required server that fails propagates its TransportError; an
        optional one is logged and skipped.
        """
        connected = {}
        for name, config in servers.items():
            try:
                connected[name] = await self.connect_server(name, config)
            except TransportError as e:
                if config.required:
                    log.error("Required MCP server '%s' failed: %s", name, e)
                    raise
                log.warning("Skipping MCP server '%s': %s", name, e)
        return connected

    async def disconnect_server(self, name: str) -> None:
        client = self._clients.pop(name, None)
        self._tools.pop(name, None)
        if client is not None:
            await client.disconnect()
            log.info("Disconnected MCP server '%s'", name)

    async def disconnect_all(self) -> None:
        for name in list(self._clients):
            await self.disconnect_server(name)

    def is_server_connected(self, name: str) -> bool:
        client = self._clients.get(name)
        return client is not None and client.is_connected()

    def list_all_tools(self) -> List[MCPTool]:
        """Every cached tool, annotated with its server name."""
        return [tool for tools in self._tools.values() for tool in tools]

    def find_server(self, tool_name: str) -> Optional[str]:
        """Name of the first connected server exposing ``tool_name``."""
        for name, tools in self._tools.items():
            if self.is_server_connected(name) and any(t.name == tool_name for t in tools):
                return name
        return None

    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> ToolResult:
        """Run a remote tool.

        Raises:
            ToolExecutionError: ``not-found`` if no connected server has
                the tool; ``remote-error`` if the transport fails mid-call.
        """
        server = self.find_server(tool_name)
        if server is None:
            raise ToolExecutionError(
                ToolErrorKind.NOT_FOUND,
                f'Tool "{tool_name}" not found on any connected server.',
                tool=tool_name,
            )

        log.info("Calling %s on MCP server '%s'", tool_name, server)
        try:
            outcome = await self._clients[server].call_tool(tool_name, arguments)
        except TransportError as e:
            raise ToolExecutionError(
                ToolErrorKind.REMOTE_ERROR,
                f"{server}/{tool_name} failed: {e.message}",
                tool=tool_name,
            ) from e

        return ToolResult(
            tool=tool_name,
            result=outcome.text or "(no output)",
            success=not outcome.is_error,
        )

    def format_status(self, servers: Mapping[str, MCPServerConfig]) -> str:
        """Status listing for the /mcp command."""
        lines = ["MCP Servers:", ""]
        if not servers:
            lines.append("  No MCP servers configured.")
        for name, config in servers.items():
            status = "connected" if self.is_server_connected(name) else "not connected"
            tools = self._tools.get(name, [])
            lines.append(f"  {name} [{status}]" + (f" ({len(tools)} tools)" if tools else ""))
            lines.append(f"    command: {' '.join([config.command, *config.args])}")
            lines.append("")
        lines.append("  Commands:")
        lines.append("    /mcp connect <name>     connect a configured server")
        lines.append("    /mcp disconnect <name>  disconnect a server")
        lines.append("    /mcp tools              list all remote tools")
        return "\n".join(lines)
