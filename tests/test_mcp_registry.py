"""Tests for RemoteToolRegistry against the fake stdio tool server."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from toolpipe.dispatcher import ToolDispatcher
from toolpipe.errors import ToolErrorKind, ToolExecutionError, TransportError, TransportErrorKind
from toolpipe.mcp_client import MCPServerConfig
from toolpipe.mcp_registry import RemoteToolRegistry
from toolpipe.permissions import PermissionMode
from toolpipe.stream_parser import ToolCallData
from toolpipe.tool_handlers import ToolHandlers
from toolpipe.tool_registry import ToolMetrics
from toolpipe.undo import UndoLog

FAKE_SERVER = os.path.join(os.path.dirname(__file__), "fixtures", "fake_mcp_server.py")


def fake(*flags, required=False):
    return MCPServerConfig(command=sys.executable, args=(FAKE_SERVER, *flags), required=required)


class TestRemoteToolRegistry:

    def test_connect_and_call(self):
        async def scenario():
            registry = RemoteToolRegistry(request_timeout=5, handshake_timeout=10)
            try:
                tools = await registry.connect_server("fake", fake())
                assert all(t.server_name == "fake" for t in tools)
                assert registry.is_server_connected("fake")
                assert registry.find_server("echo") == "fake"
                assert registry.find_server("nope") is None

                ok = await registry.call_tool("echo", {"text": "hi"})
                failed = await registry.call_tool("fail", {})
                empty = await registry.call_tool("empty", {})
            finally:
                await registry.disconnect_all()
            assert (ok.tool, ok.result, ok.success) == ("echo", "hi", True)
            assert (failed.result, failed.success) == ("tool failed on purpose", False)
            assert empty.result == "(no output)"
            assert not registry.is_server_connected("fake")
            assert registry.list_all_tools() == []

        asyncio.run(scenario())

    def test_missing_tool_is_not_found(self):
        async def scenario():
            with pytest.raises(ToolExecutionError) as exc_info:
                await RemoteToolRegistry().call_tool("echo", {})
            assert exc_info.value.kind == ToolErrorKind.NOT_FOUND

        asyncio.run(scenario())

    def test_transport_failure_is_remote_error(self):
        async def scenario():
            registry = RemoteToolRegistry()
            await registry.connect_server("fake", fake())
            try:
                with pytest.raises(ToolExecutionError) as exc_info:
                    await registry.call_tool("crash", {})
            finally:
                await registry.disconnect_all()
            assert exc_info.value.kind == ToolErrorKind.REMOTE_ERROR

        asyncio.run(scenario())

    def test_connect_all_skips_optional_failures(self):
        async def scenario():
            registry = RemoteToolRegistry(handshake_timeout=10)
            try:
                connected = await registry.connect_all({
                    "good": fake(),
                    "bad": fake("--bad-init"),
                })
                status = registry.format_status({"good": fake(), "bad": fake("--bad-init")})
            finally:
                await registry.disconnect_all()
            assert list(connected) == ["good"]
            assert "good [connected]" in status
            assert "bad [not connected]" in status

        asyncio.run(scenario())

    def test_connect_all_raises_for_required_failure(self):
        async def scenario():
            registry = RemoteToolRegistry(handshake_timeout=10)
            try:
                with pytest.raises(TransportError) as exc_info:
                    await registry.connect_all({"bad": fake("--exit-on-init", required=True)})
            finally:
                await registry.disconnect_all()
            assert exc_info.value.kind == TransportErrorKind.HANDSHAKE_FAILED

        asyncio.run(scenario())

    def test_reconnect_replaces_client(self):
        async def scenario():
            registry = RemoteToolRegistry()
            try:
                await registry.connect_server("fake", fake())
                first = registry._clients["fake"]
                await registry.connect_server("fake", fake())
                second = registry._clients["fake"]
            finally:
                await registry.disconnect_all()
            assert first is not second
            assert not first.is_connected()

        asyncio.run(scenario())

    def test_format_status_without_servers(self):
        assert "No MCP servers configured." in RemoteToolRegistry().format_status({})


class TestDispatchToRemote:

    def test_remote_tool_asks_then_runs(self, tmp_path):
        async def scenario():
            registry = RemoteToolRegistry()
            dispatcher = ToolDispatcher(ToolHandlers(UndoLog()), remote=registry, metrics=ToolMetrics())
            await registry.connect_server("fake", fake())
            try:
                call = ToolCallData("call_1", "echo", {"text": "remote"})
                pending = await dispatcher.execute(call, str(tmp_path), PermissionMode.ASK)
                approved = await dispatcher.execute(call, str(tmp_path), PermissionMode.ASK, approved=True)
            finally:
                await registry.disconnect_all()
            return pending, approved

        pending, approved = asyncio.run(scenario())
        assert pending.pending_approval is True
        assert approved.success
        assert approved.result == "remote"
        assert approved.call_id == "call_1"
