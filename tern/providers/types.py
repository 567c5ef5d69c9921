"""Canonical request/response model shared by every provider adapter.

Adapters translate these types to and from their backend's wire format;
nothing outside tern.providers ever sees a wire-level dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_RESULT = "tool_result"


class StopReason(str, Enum):
    END = "end"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    STOP_SEQUENCE = "stop_sequence"


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ImageBlock:
    """Image given either inline (base64 + media type) or by URL."""

    source_type: str  # "base64" or "url"
    data: str  # base64 payload or URL
    media_type: str = ""

    @classmethod
    def from_base64(cls, data: str, media_type: str) -> "ImageBlock":
        return cls(source_type="base64", data=data, media_type=media_type)

    @classmethod
    def from_url(cls, url: str) -> "ImageBlock":
        return cls(source_type="url", data=url)


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    role: Role
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=[TextBlock(text)])

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=[TextBlock(text)])

    @classmethod
    def tool_results(cls, results: list[ToolResultBlock]) -> "Message":
        return cls(role=Role.TOOL_RESULT, content=list(results))

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results_blocks(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """What the model sees of a tool: name, description, JSON schema."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class Request:
    model: str
    messages: list[Message]
    system: str | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: list[str] = field(default_factory=list)
    stream: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Usage:
    """Token counters. Anything the backend does not report stays 0."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )


@dataclass
class Response:
    id: str
    model: str
    message: Message
    stop_reason: StopReason | None = None
    usage: Usage = field(default_factory=Usage)

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return self.message.tool_uses

    @property
    def text(self) -> str:
        return self.message.text


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolUseStart:
    index: int
    id: str
    name: str


@dataclass(frozen=True)
class ToolInputDelta:
    index: int
    partial_json: str


@dataclass(frozen=True)
class UsageSummary:
    """Final element of every stream. Carries the assembled Response."""

    response: Response

    @property
    def usage(self) -> Usage:
        return self.response.usage


StreamDelta = Union[TextDelta, ToolUseStart, ToolInputDelta, UsageSummary]
