"""Anthropic Messages API adapter.

Auth: an explicit auth token is sent as Bearer, an API key as x-api-key.
OAT tokens (sk-ant-oat*) need Bearer plus the oauth beta headers even when
passed as an API key.
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
    ToolInputDelta,
    ToolUseBlock,
    ToolUseStart,
    Usage,
)

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS = {
    "end_turn": StopReason.END,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
    "tool_use": StopReason.TOOL_USE,
}

ANTHROPIC_MODELS: dict[str, ModelInfo] = {
    "claude-3-opus-20240229": ModelInfo(200_000, 15.0, 75.0),
    "claude-3-sonnet-20240229": ModelInfo(200_000, 3.0, 15.0),
    "claude-3-5-sonnet-20241022": ModelInfo(200_000, 3.0, 15.0),
    "claude-3-haiku-20240307": ModelInfo(200_000, 0.25, 1.25),
    "claude-sonnet-4-5-20250929": ModelInfo(200_000, 3.0, 15.0),
    "claude-opus-4-1-20250805": ModelInfo(200_000, 15.0, 75.0),
}


def map_stop_reason(raw: str | None) -> StopReason | None:
    if not raw:
        return None
    return _STOP_REASONS.get(raw)


def parse_usage(raw: dict[str, Any] | None) -> Usage:
    raw = raw or {}
    return Usage(
        input_tokens=raw.get("input_tokens") or 0,
        output_tokens=raw.get("output_tokens") or 0,
        cache_read_tokens=raw.get("cache_read_input_tokens") or 0,
        cache_write_tokens=raw.get("cache_creation_input_tokens") or 0,
    )


def _block_to_wire(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        if block.source_type == "url":
            return {"type": "image", "source": {"type": "url", "url": block.data}}
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
        }
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
        "is_error": block.is_error,
    }


def _block_from_wire(raw: dict[str, Any]) -> ContentBlock | None:
    kind = raw.get("type")
    if kind == "text":
        return TextBlock(raw.get("text", ""))
    if kind == "tool_use":
        return ToolUseBlock(id=raw["id"], name=raw["name"], input=raw.get("input") or {})
    # thinking / redacted_thinking / server tool blocks are not surfaced
    logger.debug("Ignoring content block of type %s", kind)
    return None


class _AnthropicStreamDecoder(StreamDecoder):
    """Accumulates content_block_* events into a canonical Response."""

    def __init__(self, model: str) -> None:
        self._id = ""
        self._model = model
        self._blocks: dict[int, dict[str, Any]] = {}
        self._stop_reason: StopReason | None = None
        self._usage = Usage()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, data: dict[str, Any]) -> list[StreamDelta]:
        kind = data.get("type")

        if kind == "ping":
            return []

        if kind == "message_start":
            message = data.get("message", {})
            self._id = message.get("id", "")
            self._model = message.get("model", self._model)
            self._usage = parse_usage(message.get("usage"))
            return []

        if kind == "content_block_start":
            index = data.get("index", 0)
            block = data.get("content_block", {})
            if block.get("type") == "tool_use":
                self._blocks[index] = {
                    "type": "tool_use",
                    "id": block.get("id", ""),
                    "name": block.get("name", ""),
                    "json": "",
                }
                return [ToolUseStart(index=index, id=block.get("id", ""), name=block.get("name", ""))]
            self._blocks[index] = {"type": block.get("type", "text"), "text": block.get("text", "")}
            return []

        if kind == "content_block_delta":
            index = data.get("index", 0)
            delta = data.get("delta", {})
            block = self._blocks.setdefault(index, {"type": "text", "text": ""})
            if delta.get("type") == "text_delta":
                text = delta.get("text", "")
                block["text"] = block.get("text", "") + text
                return [TextDelta(text)]
            if delta.get("type") == "input_json_delta":
                partial = delta.get("partial_json", "")
                block["json"] = block.get("json", "") + partial
                return [ToolInputDelta(index=index, partial_json=partial)]
            return []

        if kind == "message_delta":
            # stop_reason arrives here, not in message_start
            self._stop_reason = map_stop_reason(data.get("delta", {}).get("stop_reason"))
            usage = data.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self._usage.output_tokens = usage["output_tokens"]
            return []

        if kind == "message_stop":
            self._done = True
        return []

    def finish(self) -> Response:
        content: list[ContentBlock] = []
        for index in sorted(self._blocks):
            block = self._blocks[index]
            if block["type"] == "tool_use":
                raw = block.get("json", "")
                try:
                    tool_input = json.loads(raw) if raw else {}
                except ValueError:
                    logger.warning(
                        "Unparseable streamed input for tool %s, using {}", block["name"]
                    )
                    tool_input = {}
                content.append(ToolUseBlock(id=block["id"], name=block["name"], input=tool_input))
            elif block["type"] == "text" and block.get("text"):
                content.append(TextBlock(block["text"]))
        return Response(
            id=self._id,
            model=self._model,
            message=Message(role=Role.ASSISTANT, content=content),
            stop_reason=self._stop_reason,
            usage=self._usage,
        )


class AnthropicProvider(Provider):
    name = "anthropic"
    supports_streaming = True
    supports_tools = True
    supports_vision = True
    models = ANTHROPIC_MODELS

    def __init__(
        self,
        api_key: str = "",
        *,
        auth_token: str = "",
        base_url: str = "https://api.anthropic.com",
        default_model: str = "claude-sonnet-4-5-20250929",
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
        self._auth_token = auth_token

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        token = self._auth_token or (self._api_key if "sk-ant-oat" in self._api_key else "")
        if token:
            headers["authorization"] = f"Bearer {token}"
            if "sk-ant-oat" in token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif self._api_key:
            headers["x-api-key"] = self._api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )
        return headers

    def endpoint(self, request: Request) -> str:
        return f"{self.base_url}/v1/messages"

    def build_payload(self, request: Request) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        system_parts: list[str] = [request.system] if request.system else []
        for message in request.messages:
            if message.role == Role.SYSTEM:
                system_parts.append(message.text)
                continue
            # tool results travel in a user message on this API
            role = "assistant" if message.role == Role.ASSISTANT else "user"
            blocks = [_block_to_wire(b) for b in message.content]
            if not blocks:
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in request.tools
            ]
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop_sequences:
            payload["stop_sequences"] = list(request.stop_sequences)
        if request.metadata.get("user_id"):
            payload["metadata"] = {"user_id": request.metadata["user_id"]}
        if request.stream:
            payload["stream"] = True
        return payload

    def parse_response(self, data: dict[str, Any], request: Request) -> Response:
        content = [b for b in (_block_from_wire(raw) for raw in data.get("content", [])) if b]
        return Response(
            id=data.get("id", ""),
            model=data.get("model", request.model),
            message=Message(role=Role.ASSISTANT, content=content),
            stop_reason=map_stop_reason(data.get("stop_reason")),
            usage=parse_usage(data.get("usage")),
        )

    def stream_decoder(self, request: Request) -> StreamDecoder:
        return _AnthropicStreamDecoder(request.model)

