"""Tests for the streaming tool-call parser and argument grammar."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from toolpipe.errors import ParseError
from toolpipe.interrupt import CancelToken
from toolpipe.stream_parser import (
    ContentToken,
    ParserState,
    ReasoningToken,
    ToolCallData,
    ToolCallStreamParser,
    ToolCallToken,
    UsageToken,
    coalesce,
    extract_tool_calls,
    parse_stream_text,
    parse_tool_arguments,
    stream_chat,
)


SAMPLE = (
    "Let me look at the file.\n"
    "<tool:read>src/app.py</tool>"
    "Now the fix <b>bold</b> a < b.\n"
    "<think>should I edit? yes</think>"
    "<tool:edit>src/app.py\n<<<\nold()\n>>>\nnew()</tool:edit>"
    "<tool:docs.search>{\"query\": \"asyncio\"}</tool>"
    "Done."
)

SAMPLE_TOKENS = [
    ContentToken("Let me look at the file.\n"),
    ToolCallToken(ToolCallData("call_1", "read", {"path": "src/app.py"})),
    ContentToken("Now the fix <b>bold</b> a < b.\n"),
    ReasoningToken("should I edit? yes"),
    ToolCallToken(ToolCallData("call_2", "edit", {"path": "src/app.py", "old_str": "old()", "new_str": "new()"})),
    ToolCallToken(ToolCallData("call_3", "docs.search", {"query": "asyncio"})),
    ContentToken("Done."),
]


# ============================================================
# Chunking invariance
# ============================================================

class TestChunking:

    def test_whole_text(self):
        assert parse_stream_text([SAMPLE]) == SAMPLE_TOKENS

    def test_every_two_way_split(self):
        for split in range(len(SAMPLE) + 1):
            tokens = parse_stream_text([SAMPLE[:split], SAMPLE[split:]])
            assert tokens == SAMPLE_TOKENS, f"split at {split}"

    def test_one_character_at_a_time(self):
        assert parse_stream_text(list(SAMPLE)) == SAMPLE_TOKENS

    def test_every_three_way_split_of_a_directive(self):
        text = "a<tool:bash>ls -la</tool>b"
        expected = parse_stream_text([text])
        for i in range(len(text) + 1):
            for j in range(i, len(text) + 1):
                assert parse_stream_text([text[:i], text[i:j], text[j:]]) == expected

    def test_coalesce_merges_only_same_type_neighbours(self):
        tokens = [ContentToken("a"), ContentToken("b"), ReasoningToken("c"),
                  ReasoningToken("d"), UsageToken(1, 2), ContentToken("e")]
        assert coalesce(tokens) == [ContentToken("ab"), ReasoningToken("cd"),
                                    UsageToken(1, 2), ContentToken("e")]


# ============================================================
# Streaming behaviour
# ============================================================

class TestStreamingParser:

    def test_text_released_before_partial_marker(self):
        parser = ToolCallStreamParser()
        assert parser.feed("Hello <to") == [ContentToken("Hello ")]
        assert parser.state == ParserState.SCANNING_TEXT
        tokens = parser.feed("ol:read>a.py</tool> bye")
        assert tokens == [
            ToolCallToken(ToolCallData("call_1", "read", {"path": "a.py"})),
            ContentToken(" bye"),
        ]

    def test_false_marker_is_released_as_text(self):
        parser = ToolCallStreamParser()
        assert parser.feed("x <thin") == [ContentToken("x ")]
        assert parser.feed("g>") == [ContentToken("<thing>")]

    def test_invalid_tool_name_is_text(self):
        assert parse_stream_text(["<tool:bad name>x</tool>"]) == [ContentToken("<tool:bad name>x</tool>")]
        assert parse_stream_text(["<tool:>x</tool>"]) == [ContentToken("<tool:>x</tool>")]

    def test_tool_name_longer_than_limit_is_text(self):
        text = f"<tool:{'a' * 65}>x</tool>"
        assert parse_stream_text([text]) == [ContentToken(text)]

    def test_angle_brackets_inside_arguments(self):
        body = "page.html\n<div><p>hi</p></div>\n</toolbar>\n"
        tokens = parse_stream_text([f"<tool:write>{body}</tool>"])
        assert tokens == [ToolCallToken(ToolCallData(
            "call_1", "write", {"path": "page.html", "content": "<div><p>hi</p></div>\n</toolbar>\n"}))]

    def test_malformed_arguments_fail_open(self):
        text = "before<tool:read></tool>after"
        assert parse_stream_text([text]) == [ContentToken(text)]

    def test_malformed_edit_fails_open(self):
        text = "<tool:edit>a.py\nno markers here</tool>"
        assert parse_stream_text([text]) == [ContentToken(text)]

    def test_unclosed_directive_flushed_as_text(self):
        assert parse_stream_text(["ok <tool:bash>rm -rf build"]) == [ContentToken("ok <tool:bash>rm -rf build")]
        assert parse_stream_text(["<tool:bash>ls</to"]) == [ContentToken("<tool:bash>ls</to")]

    def test_unclosed_reasoning_flushed_as_reasoning(self):
        assert parse_stream_text(["<think>pondering</th"]) == [ReasoningToken("pondering</th")]

    def test_reasoning_may_contain_markup(self):
        tokens = parse_stream_text(["<think>maybe <tool:bash>ls</tool></think>go"])
        assert tokens == [ReasoningToken("maybe <tool:bash>ls</tool>"), ContentToken("go")]

    def test_ids_keep_counting_across_reset(self):
        parser = ToolCallStreamParser()
        first = parser.feed("<tool:git></tool>")
        parser.reset()
        second = parser.feed("<tool:git></tool>")
        assert first[0].call.id == "call_1"
        assert second[0].call.id == "call_2"

    def test_illegal_transition_raises(self):
        parser = ToolCallStreamParser()
        with pytest.raises(RuntimeError):
            parser._transition(ParserState.TOOL_CALL_CLOSE)


# ============================================================
# Argument grammar
# ============================================================

class TestParseToolArguments:

    def test_path_tools(self):
        assert parse_tool_arguments("read", "  src/a.py \n") == {"path": "src/a.py"}
        assert parse_tool_arguments("delete", "tmp.txt") == {"path": "tmp.txt"}

    def test_ls_path_is_optional(self):
        assert parse_tool_arguments("ls", "") == {}
        assert parse_tool_arguments("ls", "src") == {"path": "src"}

    def test_grep_with_glob(self):
        assert parse_tool_arguments("grep", "def main\n*.py") == {"pattern": "def main", "glob": "*.py"}
        assert parse_tool_arguments("grep", "TODO") == {"pattern": "TODO"}

    def test_write_keeps_content_exactly(self):
        args = parse_tool_arguments("write", "\nsrc/a.py\nline 1\n  line 2\n")
        assert args == {"path": "src/a.py", "content": "line 1\n  line 2\n"}

    def test_edit_blocks(self):
        args = parse_tool_arguments("edit", "a.py\n<<<\nx = 1\ny = 2\n>>>\nx = 3")
        assert args == {"path": "a.py", "old_str": "x = 1\ny = 2", "new_str": "x = 3"}

    def test_json_body(self):
        assert parse_tool_arguments("bash", '{"command": "ls"}') == {"command": "ls"}

    def test_json_body_missing_required_param(self):
        with pytest.raises(ParseError):
            parse_tool_arguments("bash", '{"command": 5}')

    def test_empty_required_value(self):
        with pytest.raises(ParseError):
            parse_tool_arguments("glob", "   ")

    def test_git_takes_nothing(self):
        assert parse_tool_arguments("git", "whatever") == {}

    def test_remote_tools(self):
        assert parse_tool_arguments("docs.search", " how to ") == {"input": "how to"}
        assert parse_tool_arguments("docs.search", "") == {}
        assert parse_tool_arguments("docs.search", '{"q": 1}') == {"q": 1}


# ============================================================
# Non-streaming extraction
# ============================================================

class TestExtractToolCalls:

    def test_ids_assigned_to_parsed_calls_only(self):
        text = "<tool:ls></tool> <tool:read></tool> <tool:bash>pwd</tool>"
        directives = extract_tool_calls(text)
        assert [d.name for d in directives] == ["ls", "read", "bash"]
        assert directives[0].call.id == "call_1"
        assert directives[1].call is None
        assert isinstance(directives[1].error, ParseError)
        assert directives[2].call.id == "call_2"
        assert text[directives[2].start:directives[2].end] == "<tool:bash>pwd</tool>"

    def test_directives_inside_think_are_skipped(self):
        text = "<think>maybe <tool:bash>rm x</tool></think><tool:ls></tool>"
        directives = extract_tool_calls(text)
        assert [d.name for d in directives] == ["ls"]
        assert directives[0].call.id == "call_1"

    def test_unclosed_think_hides_the_rest(self):
        directives = extract_tool_calls("<tool:git></tool><think>later <tool:ls></tool>")
        assert [d.name for d in directives] == ["git"]

    def test_agrees_with_streaming_parser(self):
        streamed = [t.call.name for t in parse_stream_text([SAMPLE]) if isinstance(t, ToolCallToken)]
        assert [d.name for d in extract_tool_calls(SAMPLE)] == streamed


# ============================================================
# stream_chat
# ============================================================

class FakeClient:
    """Yields a fixed token script; optionally cancels partway through."""

    def __init__(self, tokens, cancel_after=None):
        self.tokens = tokens
        self.cancel_after = cancel_after
        self.closed = False

    async def stream(self, messages, cancel=None):
        try:
            for i, token in enumerate(self.tokens):
                if self.cancel_after is not None and i == self.cancel_after:
                    cancel.cancel("test")
                yield token
        finally:
            self.closed = True


async def _collect(client, cancel=None):
    return [t async for t in stream_chat(client, [], cancel)]


class TestStreamChat:

    def test_content_parsed_other_tokens_pass_through(self):
        client = FakeClient([
            ReasoningToken("thinking"),
            ContentToken("run <tool:ba"),
            ContentToken("sh>pytest</tool>"),
            UsageToken(10, 5),
        ])
        tokens = coalesce(asyncio.run(_collect(client)))
        assert tokens == [
            ReasoningToken("thinking"),
            ContentToken("run "),
            ToolCallToken(ToolCallData("call_1", "bash", {"command": "pytest"})),
            UsageToken(10, 5),
        ]
        assert client.closed

    def test_cancellation_drops_partial_directive(self):
        async def scenario():
            cancel = CancelToken()
            client = FakeClient([
                ContentToken("Hi "),
                ContentToken("<tool:bash>rm"),
                ContentToken(" -rf x</tool>"),
            ], cancel_after=2)
            tokens = await _collect(client, cancel)
            return tokens, client

        tokens, client = asyncio.run(scenario())
        assert tokens == [ContentToken("Hi ")]
        assert client.closed

    def test_unclosed_directive_flushed_at_end(self):
        tokens = asyncio.run(_collect(FakeClient([ContentToken("<tool:read>a.py")])))
        assert tokens == [ContentToken("<tool:read>a.py")]
