"""OpenAI Chat Completions adapter, plus local-server and Azure variants.

Wire mapping:
- the system prompt becomes a leading ``system`` message
- ToolUse blocks become assistant ``tool_calls`` with JSON-string arguments
- each ToolResult becomes its own ``tool`` role message keyed by tool_call_id
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from tern.providers.base import ModelInfo, Provider, StreamDecoder
from tern.providers.types import (
    ContentBlock,
    ImageBlock,
    Message,
    Request,
    Response,
    Role,
    StopReason,
    StreamDelta,
    TextBlock,
    TextDelta,
    ToolDefinition,
    ToolInputDelta,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseStart,
    Usage,
)

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"

_FINISH_REASONS = {
    "stop": StopReason.END,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
}

OPENAI_MODELS: dict[str, ModelInfo] = {
    "gpt-4-turbo-preview": ModelInfo(128_000, 10.0, 30.0),
    "gpt-4": ModelInfo(8_192, 30.0, 60.0),
    "gpt-4-32k": ModelInfo(32_768, 60.0, 120.0),
    "gpt-3.5-turbo": ModelInfo(4_096, 0.5, 1.5),
    "gpt-3.5-turbo-16k": ModelInfo(16_384, 3.0, 4.0),
}

# Azure prices are quoted per 1K tokens
AZURE_MODELS: dict[str, ModelInfo] = {
    "gpt-4": ModelInfo(8_192, 0.03, 0.06, price_unit=1_000),
    "gpt-4-32k": ModelInfo(32_768, 0.06, 0.12, price_unit=1_000),
    "gpt-35-turbo": ModelInfo(8_192, 0.0015, 0.002, price_unit=1_000),
    "gpt-35-turbo-16k": ModelInfo(16_384, 0.003, 0.004, price_unit=1_000),
}


def map_finish_reason(raw: str | None) -> StopReason | None:
    if not raw:
        return None
    return _FINISH_REASONS.get(raw)


def parse_usage(raw: dict[str, Any] | None) -> Usage:
    raw = raw or {}
    prompt_details = raw.get("prompt_tokens_details") or {}
    completion_details = raw.get("completion_tokens_details") or {}
    return Usage(
        input_tokens=raw.get("prompt_tokens") or 0,
        output_tokens=raw.get("completion_tokens") or 0,
        cache_read_tokens=prompt_details.get("cached_tokens") or 0,
        reasoning_tokens=completion_details.get("reasoning_tokens") or 0,
    )


def parse_arguments(name: str, raw: str | dict | None) -> dict[str, Any]:
    """Decode a tool_calls arguments string. Garbage becomes {} with a warning."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError as e:
        logger.warning("Failed to parse arguments for tool %s: %s", name, e)
        return {}
    if not isinstance(value, dict):
        logger.warning("Arguments for tool %s are not an object, using {}", name)
        return {}
    return value


def tool_to_wire(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


def _user_content(blocks: list[ContentBlock], vision: bool) -> str | list[dict[str, Any]]:
    images = [b for b in blocks if isinstance(b, ImageBlock)]
    texts = [b.text for b in blocks if isinstance(b, TextBlock)]
    if not images or not vision:
        if images:
            logger.warning("Dropping %d image block(s): model has no vision support", len(images))
        return "\n".join(texts)
    parts: list[dict[str, Any]] = [{"type": "text", "text": t} for t in texts]
    for image in images:
        url = image.data if image.source_type == "url" else f"data:{image.media_type};base64,{image.data}"
        parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def messages_to_wire(
    system: str | None,
    messages: list[Message],
    *,
    vision: bool = False,
) -> list[dict[str, Any]]:
    """Canonical history -> Chat Completions ``messages``."""
    wire: list[dict[str, Any]] = []
    if system:
        wire.append({"role": "system", "content": system})

    for message in messages:
        if message.role == Role.SYSTEM:
            wire.append({"role": "system", "content": message.text})
            continue

        if message.role == Role.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            tool_uses = message.tool_uses
            if tool_uses:
                entry["tool_calls"] = [
                    {
                        "id": tu.id,
                        "type": "function",
                        "function": {"name": tu.name, "arguments": json.dumps(tu.input)},
                    }
                    for tu in tool_uses
                ]
            wire.append(entry)
            continue

        results = [b for b in message.content if isinstance(b, ToolResultBlock)]
        for result in results:
            wire.append({
                "role": "tool",
                "tool_call_id": result.tool_use_id,
                "content": result.content,
            })
        other = [b for b in message.content if isinstance(b, (TextBlock, ImageBlock))]
        if other:
            wire.append({"role": "user", "content": _user_content(other, vision)})
    return wire


def parse_choice_message(raw: dict[str, Any]) -> list[ContentBlock]:
    """Structured ``message`` -> text + ToolUse blocks."""
    content: list[ContentBlock] = []
    text = raw.get("content")
    if text:
        content.append(TextBlock(text))
    for call in raw.get("tool_calls") or []:
        function = call.get("function", {})
        name = function.get("name", "")
        content.append(
            ToolUseBlock(
                id=call.get("id", ""),
                name=name,
                input=parse_arguments(name, function.get("arguments")),
            )
        )
    return content


class ChatCompletionsStreamDecoder(StreamDecoder):
    """Accumulates ``delta.content`` and ``delta.tool_calls`` fragments."""

    def __init__(self, model: str) -> None:
        self._id = ""
        self._model = model
        self._text: list[str] = []
        self._calls: dict[int, dict[str, str]] = {}
        self._finish_reason: str | None = None
        self._usage = Usage()

    def feed(self, data: dict[str, Any]) -> list[StreamDelta]:
        self._id = data.get("id") or self._id
        self._model = data.get("model") or self._model
        if data.get("usage"):
            self._usage = parse_usage(data["usage"])

        deltas: list[StreamDelta] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                self._text.append(delta["content"])
                deltas.append(TextDelta(delta["content"]))
            for fragment in delta.get("tool_calls") or []:
                index = fragment.get("index", 0)
                function = fragment.get("function") or {}
                call = self._calls.get(index)
                if call is None:
                    call = {"id": fragment.get("id", ""), "name": function.get("name", ""), "arguments": ""}
                    self._calls[index] = call
                    deltas.append(ToolUseStart(index=index, id=call["id"], name=call["name"]))
                else:
                    call["id"] = call["id"] or fragment.get("id", "")
                    call["name"] = call["name"] or function.get("name", "")
                if function.get("arguments"):
                    call["arguments"] += function["arguments"]
                    deltas.append(ToolInputDelta(index=index, partial_json=function["arguments"]))
            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]
        return deltas

    @property
    def complete(self) -> bool:
        # a usage-only chunk may still follow finish_reason
        return self._finish_reason is not None

    def text(self) -> str:
        return "".join(self._text)

    def finish(self) -> Response:
        content: list[ContentBlock] = []
        if self._text:
            content.append(TextBlock(self.text()))
        for index in sorted(self._calls):
            call = self._calls[index]
            content.append(
                ToolUseBlock(
                    id=call["id"],
                    name=call["name"],
                    input=parse_arguments(call["name"], call["arguments"]),
                )
            )
        return Response(
            id=self._id,
            model=self._model,
            message=Message(role=Role.ASSISTANT, content=content),
            stop_reason=map_finish_reason(self._finish_reason),
            usage=self._usage,
        )


class OpenAIProvider(Provider):
    """OpenAI, or any OpenAI-compatible server in local mode."""

    name = "openai"
    supports_streaming = True
    supports_tools = True
    supports_vision = False
    models = OPENAI_MODELS

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = OPENAI_BASE_URL,
        default_model: str = "gpt-4-turbo-preview",
        local: bool = False,
        timeout_connect: float = 10.0,
        timeout_read: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=base_url.rstrip("/"),
            default_model=default_model,
            timeout_connect=timeout_connect,
            timeout_read=timeout_read,
            transport=transport,
        )
        self._api_key = api_key
        self.local = local

    @classmethod
    def local_server(
        cls,
        base_url: str,
        default_model: str = "local-model",
        **kwargs: Any,
    ) -> "OpenAIProvider":
        """LM Studio / Ollama / any server without auth."""
        return cls("", base_url=base_url, default_model=default_model, local=True, **kwargs)

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if not self.local:
            if not self._api_key:
                logger.warning("OPENAI_API_KEY is not set -- API calls will fail")
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    def validate_model(self, model: str) -> bool:
        # local servers serve whatever model they have loaded
        return self.local or model in self.models

    def endpoint(self, request: Request) -> str:
        return f"{self.base_url}/chat/completions"

    def build_payload(self, request: Request) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages_to_wire(
                request.system, request.messages, vision=self.supports_vision
            ),
        }
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop_sequences:
            payload["stop"] = list(request.stop_sequences)
        if request.tools:
            payload["tools"] = [tool_to_wire(t) for t in request.tools]
        if request.stream:
            payload["stream"] = True
        return payload

    def parse_response(self, data: dict[str, Any], request: Request) -> Response:
        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        return Response(
            id=data.get("id", ""),
            model=data.get("model", request.model),
            message=Message(
                role=Role.ASSISTANT, content=parse_choice_message(choice.get("message") or {})
            ),
            stop_reason=map_finish_reason(choice.get("finish_reason")),
            usage=parse_usage(data.get("usage")),
        )

    def stream_decoder(self, request: Request) -> StreamDecoder:
        return ChatCompletionsStreamDecoder(request.model)


class AzureOpenAIProvider(OpenAIProvider):
    """OpenAI wire format served from an Azure deployment."""

    name = "azure"
    models = AZURE_MODELS

    def __init__(
        self,
        api_key: str,
        *,
        resource: str,
        deployment: str,
        api_version: str = "2024-02-15-preview",
        timeout_connect: float = 10.0,
        timeout_read: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_key,
            base_url=f"https://{resource}.openai.azure.com/openai/deployments/{deployment}",
            default_model=deployment,
            timeout_connect=timeout_connect,
            timeout_read=timeout_read,
            transport=transport,
        )
        self.api_version = api_version

    def _headers(self) -> dict[str, str]:
        return {"content-type": "application/json", "api-key": self._api_key}

    def endpoint(self, request: Request) -> str:
        return f"{self.base_url}/chat/completions?api-version={self.api_version}"

    def validate_model(self, model: str) -> bool:
        return True  # the deployment decides the model

    def context_window(self, model: str) -> int | None:
        return super().context_window(model) or AZURE_MODELS["gpt-4"].context_window

    def calculate_cost(self, model: str, usage: Usage) -> float:
        # unknown deployments are priced as gpt-4
        return super().calculate_cost(model if model in self.models else "gpt-4", usage)
