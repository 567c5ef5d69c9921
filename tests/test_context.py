"""Tests for ConversationContext: tool-result pairing and trimming."""

import pytest

from tern.agent.context import (
    TRUNCATED_RESULT_CHARS,
    ConversationContext,
    estimate_message_tokens,
    estimate_text_tokens,
)
from tern.errors import ProtocolViolation
from tern.providers.types import ImageBlock, Message, Role, ToolResultBlock, ToolUseBlock


def _tool_turn(call_id: str, text: str = "x") -> list[Message]:
    return [
        Message(role=Role.ASSISTANT, content=[ToolUseBlock(id=call_id, name="read_file", input={"path": text})]),
        Message.tool_results([ToolResultBlock(call_id, text * 40)]),
    ]


class TestProtocol:
    def test_dangling_tool_result_raises(self):
        ctx = ConversationContext()
        ctx.append(Message.user("hi"))
        with pytest.raises(ProtocolViolation, match="unknown tool_use id 'nope'"):
            ctx.append(Message.tool_results([ToolResultBlock("nope", "result")]))
        assert len(ctx) == 1

    def test_result_for_emitted_use_accepted(self):
        ctx = ConversationContext([Message.user("hi"), *_tool_turn("call_1")])
        assert ctx.unanswered_tool_uses == set()

    def test_unanswered_tracked(self):
        ctx = ConversationContext([Message.user("hi"), _tool_turn("call_1")[0]])
        assert ctx.unanswered_tool_uses == {"call_1"}


class TestEstimates:
    def test_text(self):
        assert estimate_text_tokens("") == 0
        assert estimate_text_tokens("abc") == 1
        assert estimate_text_tokens("a" * 40) == 10

    def test_image_counts_fixed(self):
        msg = Message(role=Role.USER, content=[ImageBlock.from_url("https://x/y.png")])
        assert estimate_message_tokens(msg) == 1004


class TestTrim:
    def test_noop_when_within_budget(self):
        ctx = ConversationContext([Message.user("hi")])
        assert ctx.trim_to_fit(1000) == 0

    def test_drops_oldest_whole_turns(self):
        ctx = ConversationContext([Message.user("first " * 50), *_tool_turn("c1"), Message.user("second")])
        removed = ctx.trim_to_fit(20)
        assert removed == 3
        assert [m.text for m in ctx.messages] == ["second"]

    def test_never_leaves_orphan_tool_result(self):
        messages = [Message.user("start"), *_tool_turn("c1"), *_tool_turn("c2"), Message.user("next")]
        ctx = ConversationContext(messages)
        ctx.trim_to_fit(ctx.estimate_tokens() - 5)
        first = ctx.messages[0]
        assert first.role == Role.USER
        assert not first.tool_results_blocks
        # appending a result for a dropped call is now a violation
        with pytest.raises(ProtocolViolation):
            ctx.append(Message.tool_results([ToolResultBlock("c1", "late")]))

    def test_single_turn_never_starts_with_tool_result(self):
        # one user message followed by a huge tool exchange: nothing can be dropped cleanly
        ctx = ConversationContext(
            [
                Message.user("read it"),
                Message(role=Role.ASSISTANT, content=[ToolUseBlock(id="c1", name="read_file", input={"path": "big.log"})]),
                Message.tool_results([ToolResultBlock("c1", "x" * 40_000)]),
            ]
        )
        assert ctx.trim_to_fit(1000) == 0
        first, _, last = ctx.messages
        assert first.role == Role.USER
        result = last.tool_results_blocks[0]
        assert result.tool_use_id == "c1"
        assert result.content.startswith("x" * TRUNCATED_RESULT_CHARS)
        assert result.content.endswith("[truncated 38000 characters]")
        assert ctx.estimate_tokens() <= 1000
        assert ctx.unanswered_tool_uses == set()

    def test_trim_stops_at_current_user_message(self):
        messages = [Message.user("old " * 200), Message.user("now"), *_tool_turn("c1", "y")]
        ctx = ConversationContext(messages)
        assert ctx.trim_to_fit(1) == 1
        assert ctx.messages[0].text == "now"
        assert len(ctx) == 3

    def test_last_message_always_kept(self):
        ctx = ConversationContext([Message.user("a" * 4000)])
        ctx.trim_to_fit(1)
        assert len(ctx) == 1

    def test_clear(self):
        ctx = ConversationContext([Message.user("hi"), *_tool_turn("c1")])
        ctx.clear()
        assert len(ctx) == 0
        assert ctx.unanswered_tool_uses == set()

