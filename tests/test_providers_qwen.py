"""Tests for the Qwen adapter: hermes/native markup, thinking, stable call ids."""

import json

import httpx

from tern.providers.qwen import (
    DASHSCOPE_CN_URL,
    FN_ARGS,
    FN_EXIT,
    FN_NAME,
    FN_RESULT,
    HermesCodec,
    NativeCodec,
    QwenProvider,
    ToolCallFormat,
    clean_incomplete_markers,
    extract_thinking,
)
from tern.providers.types import (
    Message,
    Request,
    Role,
    StopReason,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
    UsageSummary,
)

_TOOL = ToolDefinition("read_file", "Read a file", {"type": "object", "properties": {"path": {"type": "string"}}})

_HERMES_REPLY = (
    "I'll read both files.\n"
    '<tool_call>\n{"name": "read_file", "arguments": {"path": "a.py"}}\n</tool_call>\n'
    '<tool_call>\n{"name": "read_file", "arguments": "{\\"path\\": \\"b.py\\"}"}\n</tool_call>'
)


def _request(**kw) -> Request:
    defaults = {"model": "qwen-max", "messages": [Message.user("hi")], "system": "Be brief.", "tools": [_TOOL]}
    defaults.update(kw)
    return Request(**defaults)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def test_extract_thinking():
    assert extract_thinking("<think>check a.py</think>The answer") == ("check a.py", "The answer")
    assert extract_thinking("plain") == (None, "plain")


def test_clean_incomplete_markers():
    assert clean_incomplete_markers("hello ✿FUNC") == "hello "
    assert clean_incomplete_markers("hello") == "hello"


# ---------------------------------------------------------------------------
# Hermes
# ---------------------------------------------------------------------------


class TestHermes:
    def test_parse(self):
        parsed = HermesCodec().parse(_HERMES_REPLY)
        assert parsed.text == "I'll read both files."
        assert [u.input for u in parsed.tool_uses] == [{"path": "a.py"}, {"path": "b.py"}]

    def test_ids_are_stable_and_distinct(self):
        first = HermesCodec().parse(_HERMES_REPLY).tool_uses
        second = HermesCodec().parse(_HERMES_REPLY).tool_uses
        assert [u.id for u in first] == [u.id for u in second]
        assert first[0].id != first[1].id
        assert first[0].id.startswith("call_")

    def test_malformed_call_skipped(self):
        parsed = HermesCodec().parse('<tool_call>{"name": oops}</tool_call><tool_call>{"name": "glob"}</tool_call>')
        assert [u.name for u in parsed.tool_uses] == ["glob"]

    def test_payload_advertises_tools_in_system(self):
        history = [
            Message.user("read a.py"),
            Message(role=Role.ASSISTANT, content=[ToolUseBlock(id="call_1", name="read_file", input={"path": "a.py"})]),
            Message.tool_results([ToolResultBlock("call_1", "print(1)")]),
        ]
        payload = QwenProvider("k", tool_format="hermes").build_payload(_request(messages=history))

        assert "tools" not in payload
        system = payload["messages"][0]
        assert system["role"] == "system"
        assert system["content"].startswith("Be brief.")
        assert "<tools>" in system["content"] and '"read_file"' in system["content"]
        assert "<tool_call>" in payload["messages"][2]["content"]
        assert payload["messages"][3]["role"] == "user"
        assert "Tool call ID: call_1" in payload["messages"][3]["content"]


# ---------------------------------------------------------------------------
# Native
# ---------------------------------------------------------------------------


class TestNative:
    def test_parse(self):
        text = f'Let me check.\n{FN_NAME}: list_dir\n{FN_ARGS}: {{"path": "."}}'
        parsed = NativeCodec().parse(text)
        assert parsed.text == "Let me check."
        assert parsed.tool_uses[0].name == "list_dir"
        assert parsed.tool_uses[0].input == {"path": "."}

    def test_final_answer_after_return(self):
        parsed = NativeCodec().parse(f"{FN_EXIT}: All done.")
        assert parsed.text == "All done."
        assert parsed.tool_uses == []

    def test_text_between_and_after_calls_kept(self):
        text = (
            f'{FN_NAME}: read_file\n{FN_ARGS}: {{"path": "a.py"}}\nNow the tests.\n'
            f'{FN_NAME}: read_file\n{FN_ARGS}: {{"path": "test_a.py"}}\nThat should cover it.'
        )
        parsed = NativeCodec().parse(text)
        assert [u.input["path"] for u in parsed.tool_uses] == ["a.py", "test_a.py"]
        assert parsed.text == "Now the tests.\nThat should cover it."

    def test_malformed_arguments_stay_visible(self):
        text = f'Checking.\n{FN_NAME}: glob\n{FN_ARGS}: {{pattern: *.py}}\n{FN_NAME}: list_dir\n{FN_ARGS}: {{}}'
        parsed = NativeCodec().parse(text)
        assert [u.name for u in parsed.tool_uses] == ["list_dir"]
        assert parsed.text.startswith("Checking.")
        assert f"{FN_NAME}: glob" in parsed.text
        assert "{pattern: *.py}" in parsed.text

    def test_stop_words_added_with_tools(self):
        payload = QwenProvider("k", tool_format="native").build_payload(_request())
        assert FN_RESULT in payload["stop"] and FN_EXIT in payload["stop"]
        assert "<tool_info>" in payload["messages"][0]["content"]

    def test_no_stop_words_without_tools(self):
        payload = QwenProvider("k", tool_format="native").build_payload(_request(tools=[]))
        assert "stop" not in payload


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class TestQwenProvider:
    def test_openai_format_uses_structured_tools(self):
        payload = QwenProvider("k", tool_format=ToolCallFormat.OPENAI).build_payload(_request())
        assert payload["tools"][0]["function"]["name"] == "read_file"
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}

    def test_thinking_prompt_and_extraction(self):
        provider = QwenProvider("k", thinking=True, thinking_budget=500)
        payload = provider.build_payload(_request(tools=[]))
        assert "Budget: 500 tokens" in payload["messages"][0]["content"]
        content = provider.parse_content([TextBlock("<think>look first</think>Here you go")])
        assert content == [TextBlock("Thinking: look first"), TextBlock("Here you go")]

    def test_dashscope_region(self):
        assert QwenProvider.dashscope("k", region="cn").base_url == DASHSCOPE_CN_URL

    async def test_send_parses_markup_calls(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "id": "q1",
                    "model": "qwen-max",
                    "choices": [{"finish_reason": "stop", "message": {"role": "assistant", "content": _HERMES_REPLY}}],
                    "usage": {"prompt_tokens": 5, "completion_tokens": 5},
                },
            )

        provider = QwenProvider("k", tool_format="hermes", transport=httpx.MockTransport(handler))
        response = await provider.send(_request())
        await provider.close()
        assert response.stop_reason == StopReason.TOOL_USE
        assert len(response.tool_uses) == 2
        assert response.text == "I'll read both files."

    async def test_stream_and_send_agree_on_ids(self):
        pieces = [_HERMES_REPLY[:30], _HERMES_REPLY[30:90], _HERMES_REPLY[90:]]
        chunks = [{"choices": [{"index": 0, "delta": {"content": p}}]} for p in pieces]
        body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"

        def handler(request):
            return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

        provider = QwenProvider("k", tool_format="hermes", transport=httpx.MockTransport(handler))
        deltas = [d async for d in provider.stream(_request(stream=True))]
        await provider.close()

        summary = deltas[-1]
        assert isinstance(summary, UsageSummary)
        streamed = summary.response.tool_uses
        assert [u.id for u in streamed] == [u.id for u in HermesCodec().parse(_HERMES_REPLY).tool_uses]
        assert summary.response.stop_reason == StopReason.TOOL_USE
