"""Incremental tool-call parser for streamed model output.

The model calls tools with inline markup::

    <tool:read>src/main.py</tool>
    <tool:edit>src/main.py
    <<<
    old line
    >>>
    new line
    </tool:edit>

and may wrap its chain of thought in ``<think>...</think>``.

ToolCallStreamParser is fed arbitrary text chunks and turns them into
typed tokens. Text is released as soon as it cannot be the start of a
marker, so the user sees prose immediately; only a possible partial
marker is held back. Feeding the same text in any chunking produces the
same token stream once adjacent text tokens are coalesced.

Parsing fails open: a directive whose arguments cannot be parsed, or one
still open at end of stream, is emitted verbatim as content.
"""

import json
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from .errors import ParseError
from .interrupt import CancelToken, is_cancelled
from .logger import get_logger, truncate
from .tool_registry import BuiltinTool, as_builtin, get_tool_def

log = get_logger("parser")

TOOL_OPEN_PREFIX = "<tool:"
TOOL_CLOSE_PREFIX = "</tool"
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
MAX_TOOL_NAME = 64

_NAME_CHAR_RE = re.compile(r"[\w.\-]")
_DIRECTIVE_RE = re.compile(r"<tool:([\w.\-]{1,64})>([\s\S]*?)</tool(?::[\w.\-]{1,64})?>")
_WRITE_BODY_RE = re.compile(r"^([^\n]+)\n([\s\S]*)$")
_EDIT_BODY_RE = re.compile(r"^([^\n]+)\n<<<\n([\s\S]*?)\n>>>\n([\s\S]*)$")


# ── Tokens ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class ToolCallData:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentToken:
    text: str
    type: str = field(default="content", init=False)


@dataclass(frozen=True)
class ReasoningToken:
    text: str
    type: str = field(default="reasoning", init=False)


@dataclass(frozen=True)
class UsageToken:
    input_tokens: int = 0
    output_tokens: int = 0
    type: str = field(default="usage", init=False)


@dataclass(frozen=True)
class ToolCallToken:
    call: ToolCallData
    type: str = field(default="tool_call", init=False)


StreamToken = Union[ContentToken, ReasoningToken, UsageToken, ToolCallToken]


def coalesce(tokens: Sequence[StreamToken]) -> List[StreamToken]:
    """Merge adjacent content tokens and adjacent reasoning tokens."""
    merged: List[StreamToken] = []
    for token in tokens:
        if merged and isinstance(token, (ContentToken, ReasoningToken)) and type(merged[-1]) is type(token):
            merged[-1] = type(token)(merged[-1].text + token.text)
        else:
            merged.append(token)
    return merged


# ── Argument grammar ─────────────────────────────────────────────

def _check_required(tool: BuiltinTool, args: Dict[str, Any], body: str) -> Dict[str, Any]:
    for param in get_tool_def(tool.value).required_params:
        if not isinstance(args.get(param), str):
            raise ParseError(f"{tool.value}: missing or non-string '{param}'", raw=body)
    return args


def parse_tool_arguments(name: str, body: str) -> Dict[str, Any]:
    """Turn a directive body into an argument dict.

    A JSON object is taken as the arguments directly. Otherwise each
    built-in tool has its own plain-text layout; any other tool gets
    ``{"input": body}``.

    Raises:
        ParseError: The body does not fit the tool's layout.
    """
    stripped = body.strip()
    tool = as_builtin(name)

    if stripped.startswith("{"):
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return _check_required(tool, value, body) if tool else value

    if tool is None:
        return {"input": stripped} if stripped else {}

    if tool in (BuiltinTool.READ, BuiltinTool.DELETE):
        args = {"path": stripped}
    elif tool == BuiltinTool.LS:
        return {"path": stripped} if stripped else {}
    elif tool == BuiltinTool.GLOB:
        args = {"pattern": stripped}
    elif tool == BuiltinTool.BASH:
        args = {"command": stripped}
    elif tool == BuiltinTool.GREP:
        parts = stripped.split("\n")
        args = {"pattern": parts[0].strip()}
        if len(parts) > 1 and parts[1].strip():
            args["glob"] = parts[1].strip()
    elif tool == BuiltinTool.WRITE:
        m = _WRITE_BODY_RE.match(body.lstrip("\r\n"))
        if not m or not m.group(1).strip():
            raise ParseError("write expects 'path\\ncontent'", raw=body)
        return {"path": m.group(1).strip(), "content": m.group(2)}
    elif tool == BuiltinTool.EDIT:
        m = _EDIT_BODY_RE.match(body.lstrip("\r\n"))
        if not m or not m.group(1).strip():
            raise ParseError("edit expects 'path\\n<<<\\nold\\n>>>\\nnew'", raw=body)
        return {"path": m.group(1).strip(), "old_str": m.group(2), "new_str": m.group(3)}
    else:
        # git takes no arguments
        return {}

    for key, value in args.items():
        if not value:
            raise ParseError(f"{name}: empty '{key}'", raw=body)
    return args


# ── Non-streaming extraction ─────────────────────────────────────

@dataclass
class ToolDirective:
    """One ``<tool:NAME>...</tool>`` span found in a complete text."""
    start: int
    end: int
    raw: str
    name: str
    call: Optional[ToolCallData] = None
    error: Optional[ParseError] = None


def extract_tool_calls(text: str) -> List[ToolDirective]:
    """Find every directive in ``text``, in order of appearance.

    Directives whose arguments cannot be parsed carry ``error`` instead of
    ``call``; ids are assigned to parsed calls only. Anything inside a
    ``<think>`` block is reasoning, as in the streaming parser, and an
    unclosed block runs to the end of the text.
    """
    directives = []
    counter = 0
    pos = 0
    while True:
        m = _DIRECTIVE_RE.search(text, pos)
        if m is None:
            break
        think = text.find(THINK_OPEN, pos, m.start())
        if think != -1:
            close = text.find(THINK_CLOSE, think + len(THINK_OPEN))
            if close == -1:
                break
            pos = close + len(THINK_CLOSE)
            continue
        pos = m.end()
        name, body = m.group(1), m.group(2)
        directive = ToolDirective(start=m.start(), end=m.end(), raw=m.group(0), name=name)
        try:
            arguments = parse_tool_arguments(name, body)
        except ParseError as e:
            log.warning("Malformed %s directive left in text: %s", name, e.message)
            directive.error = e
        else:
            counter += 1
            directive.call = ToolCallData(id=f"call_{counter}", name=name, arguments=arguments)
        directives.append(directive)
    return directives


# ── Streaming state machine ──────────────────────────────────────

class ParserState(str, Enum):
    SCANNING_TEXT = "scanning-text"
    TOOL_CALL_OPEN = "tool-call-open"
    ACCUMULATING_ARGUMENTS = "accumulating-arguments"
    TOOL_CALL_CLOSE = "tool-call-close"
    REASONING = "reasoning"


TRANSITIONS = {
    ParserState.SCANNING_TEXT: {ParserState.TOOL_CALL_OPEN, ParserState.REASONING},
    ParserState.TOOL_CALL_OPEN: {ParserState.ACCUMULATING_ARGUMENTS, ParserState.SCANNING_TEXT},
    ParserState.ACCUMULATING_ARGUMENTS: {ParserState.TOOL_CALL_CLOSE},
    ParserState.TOOL_CALL_CLOSE: {ParserState.ACCUMULATING_ARGUMENTS, ParserState.SCANNING_TEXT},
    ParserState.REASONING: {ParserState.SCANNING_TEXT},
}

_PARTIAL, _COMPLETE, _INVALID = "partial", "complete", "invalid"


def _is_name(text: str) -> bool:
    return all(_NAME_CHAR_RE.match(c) for c in text)


def _close_marker_status(candidate: str) -> str:
    """Classify a held-back '</tool...' prefix."""
    if len(candidate) <= len(TOOL_CLOSE_PREFIX):
        return _PARTIAL if TOOL_CLOSE_PREFIX.startswith(candidate) else _INVALID
    if not candidate.startswith(TOOL_CLOSE_PREFIX):
        return _INVALID
    rest = candidate[len(TOOL_CLOSE_PREFIX):]
    if rest == ">":
        return _COMPLETE
    if not rest.startswith(":"):
        return _INVALID
    name = rest[1:]
    if name.endswith(">") and len(name) > 1 and _is_name(name[:-1]):
        return _COMPLETE
    if len(name) <= MAX_TOOL_NAME and _is_name(name):
        return _PARTIAL
    return _INVALID


class _Emitter:
    """Collects tokens for one feed() call, merging adjacent text."""

    def __init__(self):
        self.tokens: List[StreamToken] = []

    def _text(self, cls, text: str) -> None:
        if not text:
            return
        if self.tokens and type(self.tokens[-1]) is cls:
            self.tokens[-1] = cls(self.tokens[-1].text + text)
        else:
            self.tokens.append(cls(text))

    def content(self, text: str) -> None:
        self._text(ContentToken, text)

    def reasoning(self, text: str) -> None:
        self._text(ReasoningToken, text)

    def tool_call(self, call: ToolCallData) -> None:
        self.tokens.append(ToolCallToken(call))


class ToolCallStreamParser:
    """Explicit state machine over streamed text.

    ``_marker`` holds the characters of a marker that is still being
    recognised (``<thi``, ``<tool:re``, ``</to``); ``_body`` accumulates
    the arguments of the open directive.
    """

    def __init__(self):
        self._steps: Dict[ParserState, Callable[[str, int, _Emitter], int]] = {
            ParserState.SCANNING_TEXT: self._scan_text,
            ParserState.TOOL_CALL_OPEN: self._read_tool_name,
            ParserState.ACCUMULATING_ARGUMENTS: self._accumulate,
            ParserState.TOOL_CALL_CLOSE: self._read_close_marker,
            ParserState.REASONING: self._scan_reasoning,
        }
        self._counter = 0
        self.reset()

    def reset(self) -> None:
        """Discard any partial state. Call ids keep counting."""
        self.state = ParserState.SCANNING_TEXT
        self._marker = ""
        self._name = ""
        self._body: List[str] = []

    def _transition(self, new_state: ParserState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal parser transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def feed(self, text: str) -> List[StreamToken]:
        out = _Emitter()
        i = 0
        while i < len(text):
            i = self._steps[self.state](text, i, out)
        return out.tokens

    def finish(self) -> List[StreamToken]:
        """Flush held-back text at end of stream.

        An unterminated directive is emitted as the raw text it came from.
        """
        out = _Emitter()
        if self.state == ParserState.SCANNING_TEXT or self.state == ParserState.TOOL_CALL_OPEN:
            out.content(self._marker)
        elif self.state == ParserState.REASONING:
            out.reasoning(self._marker)
        else:
            log.warning("Unclosed %s directive at end of stream", self._name)
            out.content(self._raw_open() + "".join(self._body) + self._marker)
        self.reset()
        return out.tokens

    def _raw_open(self) -> str:
        return f"{TOOL_OPEN_PREFIX}{self._name}>"

    # ── State handlers: each consumes from text[i:] and returns the new index

    def _scan_text(self, text: str, i: int, out: _Emitter) -> int:
        if self._marker:
            candidate = self._marker + text[i]
            if candidate == THINK_OPEN:
                self._marker = ""
                self._transition(ParserState.REASONING)
                return i + 1
            if candidate == TOOL_OPEN_PREFIX:
                self._marker = candidate
                self._transition(ParserState.TOOL_CALL_OPEN)
                return i + 1
            if THINK_OPEN.startswith(candidate) or TOOL_OPEN_PREFIX.startswith(candidate):
                self._marker = candidate
                return i + 1
            out.content(self._marker)
            self._marker = ""
            return i

        j = text.find("<", i)
        if j < 0:
            out.content(text[i:])
            return len(text)
        out.content(text[i:j])
        self._marker = "<"
        return j + 1

    def _read_tool_name(self, text: str, i: int, out: _Emitter) -> int:
        ch = text[i]
        name = self._marker[len(TOOL_OPEN_PREFIX):]
        if ch == ">" and name:
            self._name = name
            self._marker = ""
            self._body = []
            self._transition(ParserState.ACCUMULATING_ARGUMENTS)
            return i + 1
        if _NAME_CHAR_RE.match(ch) and len(name) < MAX_TOOL_NAME:
            self._marker += ch
            return i + 1
        # Not a directive after all; the offending character is rescanned
        out.content(self._marker)
        self._marker = ""
        self._transition(ParserState.SCANNING_TEXT)
        return i

    def _accumulate(self, text: str, i: int, out: _Emitter) -> int:
        j = text.find("<", i)
        if j < 0:
            self._body.append(text[i:])
            return len(text)
        self._body.append(text[i:j])
        self._marker = "<"
        self._transition(ParserState.TOOL_CALL_CLOSE)
        return j + 1

    def _read_close_marker(self, text: str, i: int, out: _Emitter) -> int:
        candidate = self._marker + text[i]
        status = _close_marker_status(candidate)
        if status == _PARTIAL:
            self._marker = candidate
            return i + 1
        if status == _INVALID:
            self._body.append(self._marker)
            self._marker = ""
            self._transition(ParserState.ACCUMULATING_ARGUMENTS)
            return i

        self._marker = ""
        self._emit_call(candidate, out)
        self._transition(ParserState.SCANNING_TEXT)
        return i + 1

    def _emit_call(self, close_marker: str, out: _Emitter) -> None:
        body = "".join(self._body)
        raw = self._raw_open() + body + close_marker
        self._body = []
        try:
            arguments = parse_tool_arguments(self._name, body)
        except ParseError as e:
            log.warning("Malformed %s directive emitted as text: %s", self._name, e.message)
            out.content(raw)
            return
        self._counter += 1
        call = ToolCallData(id=f"call_{self._counter}", name=self._name, arguments=arguments)
        log.debug("tool call %s %s %s", call.id, call.name, truncate(json.dumps(arguments)))
        out.tool_call(call)

    def _scan_reasoning(self, text: str, i: int, out: _Emitter) -> int:
        if self._marker:
            candidate = self._marker + text[i]
            if candidate == THINK_CLOSE:
                self._marker = ""
                self._transition(ParserState.SCANNING_TEXT)
                return i + 1
            if THINK_CLOSE.startswith(candidate):
                self._marker = candidate
                return i + 1
            out.reasoning(self._marker)
            self._marker = ""
            return i

        j = text.find("<", i)
        if j < 0:
            out.reasoning(text[i:])
            return len(text)
        out.reasoning(text[i:j])
        self._marker = "<"
        return j + 1


def parse_stream_text(chunks: Sequence[str]) -> List[StreamToken]:
    """Run a fresh parser over ``chunks`` and return the coalesced tokens."""
    parser = ToolCallStreamParser()
    tokens: List[StreamToken] = []
    for chunk in chunks:
        tokens.extend(parser.feed(chunk))
    tokens.extend(parser.finish())
    return coalesce(tokens)


# ── Streaming driver ─────────────────────────────────────────────

async def stream_chat(
    client: Any,
    messages: List[Dict[str, Any]],
    cancel: Optional[CancelToken] = None,
) -> AsyncIterator[StreamToken]:
    """Stream one model turn as typed tokens.

    ``client.stream(messages, cancel)`` must yield ContentToken,
    ReasoningToken and UsageToken. Content goes through the parser;
    reasoning and usage pass straight through. On cancellation the
    generator stops at once and partial parser state is dropped, so an
    interrupted directive never becomes a tool call.
    """
    parser = ToolCallStreamParser()
    async with aclosing(client.stream(messages, cancel)) as source:
        async for token in source:
            if is_cancelled(cancel):
                break
            if isinstance(token, ContentToken):
                for parsed in parser.feed(token.text):
                    yield parsed
                    if is_cancelled(cancel):
                        break
            else:
                yield token
            if is_cancelled(cancel):
                break

    if is_cancelled(cancel):
        log.info("Turn cancelled in state %s; partial output discarded", parser.state.value)
        parser.reset()
        return

    for parsed in parser.finish():
        yield parsed
