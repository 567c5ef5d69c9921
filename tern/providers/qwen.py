"""Qwen adapter (DashScope or a local vLLM/OpenAI-compatible endpoint).

Qwen models can emit tool calls three ways, fixed per deployment:

- ``openai``: structured ``tool_calls`` fields, same as OpenAI.
- ``hermes``: tools advertised in the system prompt inside ``<tools>``;
  calls come back as ``<tool_call>{"name": ..., "arguments": ...}</tool_call>``.
- ``native``: Qwen-Agent markers (``✿FUNCTION✿`` / ``✿ARGS✿`` / ``✿RESULT✿``
  / ``✿RETURN✿``).

Each format is one ToolCallFormat subclass owning both directions of the
translation. Markup-derived call ids are a hash of the response text and
the call's position, so parsing the same response twice yields the same
ToolUse blocks.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from tern.providers.base import ModelInfo, StreamDecoder
from tern.providers.openai import (
    ChatCompletionsStreamDecoder,
    OpenAIProvider,
    map_finish_reason,
    messages_to_wire,
    parse_choice_message,
    parse_usage,
    tool_to_wire,
)
from tern.providers.types import (
    ContentBlock,
    Message,
    Request,
    Response,
    Role,
    StopReason,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

DASHSCOPE_INTL_URL = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
DASHSCOPE_CN_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
QWEN_READ_TIMEOUT = 180.0  # reasoning models are slow to first byte

FN_NAME = "✿FUNCTION✿"
FN_ARGS = "✿ARGS✿"
FN_RESULT = "✿RESULT✿"
FN_EXIT = "✿RETURN✿"
_MARKERS = (FN_NAME, FN_ARGS, FN_RESULT, FN_EXIT)

QWEN_MODELS: dict[str, ModelInfo] = {
    "qwen-max": ModelInfo(32_768, 1.6, 6.4),
    "qwen-plus": ModelInfo(131_072, 0.4, 1.2),
    "qwen-turbo": ModelInfo(1_000_000, 0.05, 0.2),
    "qwen2.5-coder-32b-instruct": ModelInfo(131_072, 0.0, 0.0),
    "qwen3-coder-plus": ModelInfo(1_000_000, 1.0, 5.0),
}

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
_HERMES_CALL_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)
_JSON = json.JSONDecoder()


class ToolCallFormat(str, Enum):
    OPENAI = "openai"
    HERMES = "hermes"
    NATIVE = "native"


@dataclass
class ParsedText:
    """Display text plus any tool calls recovered from markup."""

    text: str
    tool_uses: list[ToolUseBlock] = field(default_factory=list)


def markup_call_id(source: str, index: int) -> str:
    digest = hashlib.sha256(f"{index}\x00{source}".encode()).hexdigest()
    return f"call_{digest[:24]}"


def extract_thinking(text: str) -> tuple[str | None, str]:
    """Split ``<think>...</think>`` out of a response."""
    match = _THINK_RE.search(text)
    if not match:
        return None, text
    thinking = match.group(1).strip()
    remaining = (text[: match.start()] + text[match.end():]).strip()
    return thinking, remaining


def clean_incomplete_markers(text: str) -> str:
    """Drop a partial marker (e.g. ``✿FUNC``) left dangling at the end of text."""
    for marker in _MARKERS:
        for i in range(len(marker) - 1, 0, -1):
            if text.endswith(marker[:i]):
                return text[: -i]
    return text


# ---------------------------------------------------------------------------
# Tool-call formats
# ---------------------------------------------------------------------------


class ToolCallCodec:
    """One tool-call encoding. Subclasses cover a single ToolCallFormat."""

    format: ToolCallFormat
    stop_words: tuple[str, ...] = ()

    def system_prompt(self, tools: list[ToolDefinition]) -> str:
        return ""

    def wire_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]] | None:
        return None

    def messages(self, system: str | None, messages: list[Message]) -> list[dict[str, Any]]:
        wire: list[dict[str, Any]] = []
        if system:
            wire.append({"role": "system", "content": system})
        for message in messages:
            if message.role == Role.ASSISTANT:
                text = message.text
                for tool_use in message.tool_uses:
                    text += self.render_call(tool_use)
                wire.append({"role": "assistant", "content": text})
            elif message.role == Role.SYSTEM:
                wire.append({"role": "system", "content": message.text})
            else:
                for result in message.tool_results_blocks:
                    wire.append({"role": "user", "content": self.render_result(result)})
                if message.text:
                    wire.append({"role": "user", "content": message.text})
        return wire

    def render_call(self, tool_use: ToolUseBlock) -> str:
        raise NotImplementedError

    def render_result(self, result: ToolResultBlock) -> str:
        raise NotImplementedError

    def parse(self, text: str) -> ParsedText:
        return ParsedText(text=text)


class OpenAICodec(ToolCallCodec):
    format = ToolCallFormat.OPENAI

    def wire_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]] | None:
        return [tool_to_wire(t) for t in tools] or None

    def messages(self, system: str | None, messages: list[Message]) -> list[dict[str, Any]]:
        return messages_to_wire(system, messages)


class HermesCodec(ToolCallCodec):
    format = ToolCallFormat.HERMES

    def system_prompt(self, tools: list[ToolDefinition]) -> str:
        lines = [
            "You are a function calling AI model. You are provided with function "
            "signatures within <tools></tools> XML tags. You may call one or more "
            "functions to assist with the user query. Don't make assumptions about "
            "what values to plug into functions. Here are the available tools:",
            "<tools>",
        ]
        for tool in tools:
            lines.append(json.dumps(tool_to_wire(tool)))
        lines.append("</tools>")
        lines.append("")
        lines.append(
            "For each function call return a json object with function name and "
            "arguments within <tool_call></tool_call> XML tags as follows:"
        )
        lines.append('<tool_call>\n{"name": <function-name>, "arguments": <args-dict>}\n</tool_call>')
        return "\n".join(lines)

    def render_call(self, tool_use: ToolUseBlock) -> str:
        body = json.dumps({"name": tool_use.name, "arguments": tool_use.input})
        return f"\n<tool_call>\n{body}\n</tool_call>"

    def render_result(self, result: ToolResultBlock) -> str:
        return (
            f"<tool_response>\nTool call ID: {result.tool_use_id}\n"
            f"Result: {result.content}\n</tool_response>"
        )

    def parse(self, text: str) -> ParsedText:
        tool_uses: list[ToolUseBlock] = []
        for index, match in enumerate(_HERMES_CALL_RE.finditer(text)):
            raw = match.group(1).strip()
            try:
                call = json.loads(raw)
                name = call["name"]
                arguments = call.get("arguments") or {}
                if isinstance(arguments, str):
                    arguments = json.loads(arguments)
                if not isinstance(name, str) or not isinstance(arguments, dict):
                    raise ValueError("name must be a string and arguments an object")
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unparseable <tool_call> #%d: %s", index, e)
                continue
            tool_uses.append(
                ToolUseBlock(id=markup_call_id(text, index), name=name, input=arguments)
            )
        remaining = _HERMES_CALL_RE.sub("", text).strip()
        return ParsedText(text=remaining, tool_uses=tool_uses)


class NativeCodec(ToolCallCodec):
    format = ToolCallFormat.NATIVE
    stop_words = (FN_RESULT, FN_EXIT)

    def system_prompt(self, tools: list[ToolDefinition]) -> str:
        parts = [
            "# Tools\n\nYou may call one or more functions to assist with the user query.\n\n"
            "You are provided with function signatures within <tool_info></tool_info> XML tags:\n"
            "<tool_info>\n"
        ]
        for tool in tools:
            parts.append(
                f"### {tool.name}\n\n{tool.name}: {tool.description} Parameters: "
                f"{json.dumps(tool.input_schema)} Format the arguments as a JSON object.\n\n"
            )
        parts.append("</tool_info>\n\n")
        parts.append(
            f"For each function call, return a line with the function name prefixed by "
            f"'{FN_NAME}:', followed by a line with arguments prefixed by '{FN_ARGS}:'.\n"
            f"Example:\n{FN_NAME}: function_name\n{FN_ARGS}: {{\"arg1\": \"value1\"}}\n\n"
            f"When you have received the results and are ready to respond to the user, "
            f"output '{FN_EXIT}:' followed by your final response."
        )
        return "".join(parts)

    def render_call(self, tool_use: ToolUseBlock) -> str:
        return f"\n{FN_NAME}: {tool_use.name}\n{FN_ARGS}: {json.dumps(tool_use.input)}"

    def render_result(self, result: ToolResultBlock) -> str:
        return f"\n{FN_RESULT}: {result.content}\n{FN_EXIT}:"

    def parse(self, text: str) -> ParsedText:
        """Split native markup into calls and visible text.

        Text between or after calls is kept. A call whose arguments do not
        parse stays in the text as raw markup.
        """
        text = clean_incomplete_markers(text)
        chunks = text.split(FN_NAME)
        pieces = [chunks[0]]
        tool_uses: list[ToolUseBlock] = []

        for index, chunk in enumerate(chunks[1:]):
            body = chunk.lstrip(":").lstrip()
            args_at = body.find(FN_ARGS)
            if args_at < 0:
                logger.warning("Keeping %s call #%d without %s as text", FN_NAME, index, FN_ARGS)
                pieces.append(FN_NAME + chunk)
                continue
            name = body[:args_at].strip()
            args_text = body[args_at + len(FN_ARGS):].lstrip(":").lstrip()
            try:
                arguments, end = _JSON.raw_decode(args_text)
                if not name or not isinstance(arguments, dict):
                    raise ValueError("missing name or non-object arguments")
            except ValueError as e:
                logger.warning("Keeping unparseable native call #%d (%s) as text: %s", index, name, e)
                pieces.append(FN_NAME + chunk)
                continue
            tool_uses.append(
                ToolUseBlock(id=markup_call_id(text, index), name=name, input=arguments)
            )
            pieces.append(args_text[end:])

        display = "\n".join(p for p in map(_without_exit_marker, pieces) if p)
        return ParsedText(text=display, tool_uses=tool_uses)


def _without_exit_marker(text: str) -> str:
    if FN_EXIT not in text:
        return text.strip()
    before, after = text.split(FN_EXIT, 1)
    return "\n".join(p for p in (before.strip(), after.lstrip(":").strip()) if p)


CODECS: dict[ToolCallFormat, type[ToolCallCodec]] = {
    ToolCallFormat.OPENAI: OpenAICodec,
    ToolCallFormat.HERMES: HermesCodec,
    ToolCallFormat.NATIVE: NativeCodec,
}


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class _MarkupStreamDecoder(ChatCompletionsStreamDecoder):
    """Streams raw text, then re-parses the whole message on finish."""

    def __init__(self, model: str, provider: "QwenProvider") -> None:
        super().__init__(model)
        self._provider = provider

    def finish(self) -> Response:
        response = super().finish()
        response.message = Message(
            role=Role.ASSISTANT,
            content=self._provider.parse_content(response.message.content),
        )
        if response.tool_uses:
            response.stop_reason = StopReason.TOOL_USE
        return response


class QwenProvider(OpenAIProvider):
    name = "qwen"
    supports_vision = False
    models = QWEN_MODELS

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = DASHSCOPE_INTL_URL,
        default_model: str = "qwen-max",
        tool_format: ToolCallFormat | str = ToolCallFormat.OPENAI,
        thinking: bool = False,
        thinking_budget: int | None = None,
        local: bool = False,
        timeout_connect: float = 10.0,
        timeout_read: float = QWEN_READ_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_key,
            base_url=base_url,
            default_model=default_model,
            local=local,
            timeout_connect=timeout_connect,
            timeout_read=timeout_read,
            transport=transport,
        )
        self.tool_format = ToolCallFormat(tool_format)
        self.codec = CODECS[self.tool_format]()
        self.thinking = thinking
        self.thinking_budget = thinking_budget

    @classmethod
    def dashscope(cls, api_key: str, region: str = "intl", **kwargs: Any) -> "QwenProvider":
        base_url = DASHSCOPE_CN_URL if region == "cn" else DASHSCOPE_INTL_URL
        return cls(api_key, base_url=base_url, **kwargs)

    def validate_model(self, model: str) -> bool:
        return self.local or model in self.models

    def _system(self, request: Request) -> str | None:
        parts = [request.system] if request.system else []
        if request.tools:
            prompt = self.codec.system_prompt(request.tools)
            if prompt:
                parts.append(prompt)
        if self.thinking:
            if self.thinking_budget:
                parts.append(
                    "IMPORTANT: You have thinking mode enabled. Use <think></think> tags to "
                    f"show your reasoning process. Budget: {self.thinking_budget} tokens for thinking."
                )
            else:
                parts.append(
                    "IMPORTANT: You have thinking mode enabled. Use <think></think> tags to "
                    "show your reasoning process before providing your final answer."
                )
        return "\n\n".join(parts) or None

    def build_payload(self, request: Request) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": self.codec.messages(self._system(request), request.messages),
        }
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        stop = list(request.stop_sequences)
        if request.tools:
            stop.extend(w for w in self.codec.stop_words if w not in stop)
            tools = self.codec.wire_tools(request.tools)
            if tools:
                payload["tools"] = tools
        if stop:
            payload["stop"] = stop
        if request.stream:
            payload["stream"] = True
        return payload

    def parse_content(self, blocks: list[ContentBlock]) -> list[ContentBlock]:
        """Apply thinking extraction and markup parsing to text blocks."""
        content: list[ContentBlock] = []
        for block in blocks:
            if not isinstance(block, TextBlock):
                content.append(block)
                continue
            text = block.text
            if self.thinking:
                thought, text = extract_thinking(text)
                if thought:
                    logger.info("Qwen thinking: %s", thought[:200])
                    content.append(TextBlock(f"Thinking: {thought}"))
            parsed = self.codec.parse(text)
            if parsed.text:
                content.append(TextBlock(parsed.text))
            content.extend(parsed.tool_uses)
        return content

    def parse_response(self, data: dict[str, Any], request: Request) -> Response:
        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        content = self.parse_content(parse_choice_message(choice.get("message") or {}))
        has_calls = any(isinstance(b, ToolUseBlock) for b in content)
        return Response(
            id=data.get("id", ""),
            model=data.get("model", request.model),
            message=Message(role=Role.ASSISTANT, content=content),
            stop_reason=StopReason.TOOL_USE if has_calls else map_finish_reason(choice.get("finish_reason")),
            usage=parse_usage(data.get("usage")),
        )

    def stream_decoder(self, request: Request) -> StreamDecoder:
        return _MarkupStreamDecoder(request.model, self)
