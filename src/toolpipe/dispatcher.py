"""Tool dispatcher: permission check, execution and result conversion.

Every tool call, built-in or remote, goes through ToolDispatcher.execute.
Failures never escape as exceptions; they come back as a ToolResult with
``success=False`` and, for classified failures, an ``error_kind``.
"""

import json
import re
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from .errors import ParseError, ToolErrorKind, ToolExecutionError
from .logger import get_logger, log_exception, truncate
from .mcp_registry import RemoteToolRegistry
from .permissions import (
    DEFAULT_PERMISSION_MODE,
    PermissionGate,
    PermissionMode,
    format_permission_prompt,
    generate_diff_preview,
    generate_write_preview,
    should_ask_permission,
)
from .stream_parser import ToolCallData, extract_tool_calls
from .tool_handlers import ToolHandlers, resolve_path
from .tool_registry import BuiltinTool, ToolMetrics, as_builtin, get_metrics
from .tools.result import ToolResult

log = get_logger("dispatcher")

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)

# Called with a pending call and its approval prompt; True runs it
Approver = Callable[[ToolCallData, ToolResult], Awaitable[bool]]


def describe_arguments(call: ToolCallData) -> str:
    """Short one-line form of a call's arguments for prompts and logs."""
    args = call.arguments
    for key in ("command", "path", "pattern"):
        if isinstance(args.get(key), str):
            return args[key]
    return json.dumps(args, ensure_ascii=False) if args else ""


class ToolDispatcher:
    """Routes tool calls to built-in handlers or remote servers."""

    def __init__(
        self,
        handlers: ToolHandlers,
        remote: Optional[RemoteToolRegistry] = None,
        gate: Optional[PermissionGate] = None,
        metrics: Optional[ToolMetrics] = None,
    ):
        self.handlers = handlers
        self.remote = remote
        self.gate = gate
        self.metrics = metrics or get_metrics()

    def _approval_prompt(self, call: ToolCallData, cwd: str) -> str:
        prompt = format_permission_prompt(call.name, describe_arguments(call))
        args = call.arguments
        tool = as_builtin(call.name)
        if tool == BuiltinTool.EDIT and isinstance(args.get("old_str"), str):
            prompt += "\n" + generate_diff_preview(args["path"], args["old_str"], args.get("new_str", ""))
        elif tool == BuiltinTool.WRITE and isinstance(args.get("content"), str):
            is_new = not resolve_path(cwd, args["path"]).exists()
            prompt += "\n" + generate_write_preview(args["path"], args["content"], is_new)
        return prompt

    async def execute(
        self,
        call: ToolCallData,
        cwd: str,
        mode: PermissionMode = DEFAULT_PERMISSION_MODE,
        approved: bool = False,
        allow_list: Optional[Iterable[str]] = None,
    ) -> ToolResult:
        """Run one tool call unless it needs approval first.

        Returns a ``pending_approval`` result, without running anything,
        when the permission gate says to ask and ``approved`` is False.
        """
        if allow_list is None and self.gate is not None:
            allow_list = self.gate.allow_list
        if not approved and should_ask_permission(call.name, mode, allow_list):
            log.info("%s %s awaiting approval (mode=%s)", call.id, call.name, mode.value)
            return ToolResult(
                tool=call.name,
                result=self._approval_prompt(call, cwd),
                success=False,
                pending_approval=True,
                call_id=call.id,
            )

        log.info("%s %s %s", call.id, call.name, truncate(describe_arguments(call)))
        t0 = time.monotonic()
        try:
            result = await self._run(call, cwd)
        except ToolExecutionError as e:
            log.warning("%s %s failed: %s", call.id, call.name, e)
            result = ToolResult.failure(call.name, e.message, e.kind.value)
        except ParseError as e:
            log.warning("%s %s bad arguments: %s", call.id, call.name, e)
            result = ToolResult.failure(call.name, e.message, e.kind.value)
        except Exception as e:
            log_exception(log, f"{call.id} {call.name} crashed", e)
            result = ToolResult.failure(call.name, f"Unexpected error: {type(e).__name__}: {e}")

        elapsed_ms = (time.monotonic() - t0) * 1000
        self.metrics.record(call.name, elapsed_ms, result.success,
                            error=None if result.success else result.result[:200],
                            result_size=len(result.result))
        return result.with_call_id(call.id)

    async def _run(self, call: ToolCallData, cwd: str) -> ToolResult:
        tool = as_builtin(call.name)
        if tool is not None:
            return await self.handlers.run(tool, call.arguments, cwd)
        if self.remote is None:
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, f"Unknown tool: {call.name}", tool=call.name)
        return await self.remote.call_tool(call.name, call.arguments)

    def denied_result(self, call: ToolCallData) -> ToolResult:
        """Result for a call the user refused to run."""
        log.info("%s %s denied by user", call.id, call.name)
        return ToolResult.failure(
            call.name,
            f"Permission denied: the user rejected {call.name}.",
            ToolErrorKind.PERMISSION_DENIED.value,
            call_id=call.id,
        )

    async def resolve_pending(self, call: ToolCallData, pending: ToolResult, cwd: str,
                              mode: PermissionMode, approver: Optional[Approver]) -> ToolResult:
        """Ask ``approver`` about a pending call; run it or deny it."""
        if approver is not None and await approver(call, pending):
            return await self.execute(call, cwd, mode, approved=True)
        return self.denied_result(call)

    async def execute_tool_calls(
        self,
        response: str,
        cwd: str,
        mode: PermissionMode = DEFAULT_PERMISSION_MODE,
        approver: Optional[Approver] = None,
    ) -> Tuple[List[ToolResult], str]:
        """Execute every directive in a complete response, in order.

        Returns the results and the response with the executed directives
        removed. Directives with malformed arguments are left in the text
        as written and are not run. Without an ``approver``, calls that
        need approval come back as pending results.
        """
        text = _BR_RE.sub("\n", response)
        results: List[ToolResult] = []
        pieces: List[str] = []
        last = 0
        for directive in extract_tool_calls(text):
            pieces.append(text[last:directive.start])
            last = directive.end
            if directive.call is None:
                pieces.append(directive.raw)
                continue
            result = await self.execute(directive.call, cwd, mode)
            if result.pending_approval and approver is not None:
                result = await self.resolve_pending(directive.call, result, cwd, mode, approver)
            results.append(result)
        pieces.append(text[last:])
        return results, "".join(pieces).strip()
