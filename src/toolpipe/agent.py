"""Orchestration loop: model turn, tool calls, results, repeat."""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .dispatcher import Approver, ToolDispatcher
from .interrupt import CancelToken, is_cancelled
from .logger import get_logger
from .permissions import PermissionGate
from .stream_parser import (
    ContentToken,
    StreamToken,
    ToolCallData,
    ToolCallToken,
    UsageToken,
    stream_chat,
)
from .tool_registry import format_tool_help
from .tools.result import ToolResult

log = get_logger("agent")

SYSTEM_PROMPT = """You are a coding assistant working in the directory {cwd}.
You can call tools by writing them inline in your reply.

{tools}

Call one or more tools, then wait for their results before continuing.
When you are done, answer without any tool call."""


def render_tool_call(call: ToolCallData) -> str:
    """Markup equivalent of a parsed call, for the conversation history."""
    return f"<tool:{call.name}>{json.dumps(call.arguments, ensure_ascii=False)}</tool>"


@dataclass
class AgentResult:
    content: str = ""
    tool_results: List[ToolResult] = field(default_factory=list)
    turns: int = 0
    cancelled: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


class Agent:
    """Drives one conversation against a streaming client.

    ``client`` is anything with ``stream(messages, cancel)`` yielding
    tokens, normally a StreamingClient inside its context manager.
    """

    def __init__(
        self,
        config: Config,
        client: Any,
        dispatcher: ToolDispatcher,
        gate: PermissionGate,
        approver: Optional[Approver] = None,
        on_token: Optional[Callable[[StreamToken], None]] = None,
        on_result: Optional[Callable[[ToolResult], None]] = None,
    ):
        self.config = config
        self.client = client
        self.dispatcher = dispatcher
        self.gate = gate
        self.approver = approver
        self.on_token = on_token
        self.on_result = on_result
        self.cwd = str(config.workspace_path)
        self.messages: List[Dict[str, Any]] = [{
            "role": "system",
            "content": SYSTEM_PROMPT.format(cwd=self.cwd, tools=format_tool_help()),
        }]

    def clear(self) -> None:
        del self.messages[1:]

    async def run(self, user_input: str, cancel: Optional[CancelToken] = None) -> AgentResult:
        """Run model turns until the model stops calling tools.

        Stops after ``config.max_turns`` turns or on cancellation. Tool
        calls that completed before a cancellation are kept (and stay in
        the undo log).
        """
        self.messages.append({"role": "user", "content": user_input})
        outcome = AgentResult()

        for turn in range(1, self.config.max_turns + 1):
            outcome.turns = turn
            assistant_parts: List[str] = []
            content_parts: List[str] = []
            calls: List[ToolCallData] = []

            async for token in stream_chat(self.client, self.messages, cancel):
                if self.on_token:
                    self.on_token(token)
                if isinstance(token, ContentToken):
                    content_parts.append(token.text)
                    assistant_parts.append(token.text)
                elif isinstance(token, ToolCallToken):
                    calls.append(token.call)
                    assistant_parts.append(render_tool_call(token.call))
                elif isinstance(token, UsageToken):
                    outcome.input_tokens += token.input_tokens
                    outcome.output_tokens += token.output_tokens

            outcome.content = "".join(content_parts).strip()
            if is_cancelled(cancel):
                log.info("Run cancelled during turn %d", turn)
                outcome.cancelled = True
                return outcome

            self.messages.append({"role": "assistant", "content": "".join(assistant_parts)})
            if not calls:
                log.info("Run finished after %d turn(s)", turn)
                return outcome

            results = await self._execute_calls(calls, cancel)
            outcome.tool_results.extend(results)
            self.messages.append({
                "role": "user",
                "content": "\n\n".join(r.to_message() for r in results),
            })
            if is_cancelled(cancel):
                outcome.cancelled = True
                return outcome

        log.warning("Stopped after max_turns=%d", self.config.max_turns)
        return outcome

    async def _execute_calls(self, calls: List[ToolCallData], cancel: Optional[CancelToken]) -> List[ToolResult]:
        results = []
        for call in calls:
            if is_cancelled(cancel):
                log.info("Skipping %s %s after cancellation", call.id, call.name)
                break
            mode = self.gate.get_permission_mode()
            result = await self.dispatcher.execute(call, self.cwd, mode, allow_list=self.gate.allow_list)
            if result.pending_approval:
                result = await self.dispatcher.resolve_pending(call, result, self.cwd, mode, self.approver)
            if self.on_result:
                self.on_result(result)
            results.append(result)
        return results
