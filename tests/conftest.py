"""Shared fixtures: isolated settings, an in-memory SQLite database and a
scripted provider that replays canned responses."""

import pytest
import pytest_asyncio

from tern.config import Settings
from tern.providers.base import ModelInfo, Provider
from tern.providers.types import (
    Message,
    Response,
    Role,
    StopReason,
    TextBlock,
    TextDelta,
    ToolUseBlock,
    Usage,
    UsageSummary,
)
from tern.storage.database import Database

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


def text_reply(text: str, *, input_tokens: int = 10, output_tokens: int = 5) -> Response:
    return Response(
        id="msg_text",
        model="test-model",
        message=Message.assistant(text),
        stop_reason=StopReason.END,
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def tool_reply(*calls: tuple[str, str, dict], text: str = "") -> Response:
    """Assistant reply carrying (id, name, input) tool calls."""
    content = [TextBlock(text)] if text else []
    content += [ToolUseBlock(id=call_id, name=name, input=args) for call_id, name, args in calls]
    return Response(
        id="msg_tools",
        model="test-model",
        message=Message(role=Role.ASSISTANT, content=content),
        stop_reason=StopReason.TOOL_USE,
        usage=Usage(input_tokens=10, output_tokens=5),
    )


class ScriptedProvider(Provider):
    """Returns queued Responses (or raises queued exceptions) in order.

    Every request is recorded with a snapshot of its messages.
    """

    name = "scripted"
    models = {"test-model": ModelInfo(context_window=200_000, input_price=3.0, output_price=15.0)}

    def __init__(self, responses=(), *, streaming: bool = True) -> None:
        super().__init__(base_url="http://scripted.invalid", default_model="test-model")
        self.responses = list(responses)
        self.requests = []
        self.supports_streaming = streaming

    def endpoint(self, request):
        return f"{self.base_url}/v1/messages"

    def build_payload(self, request):
        raise NotImplementedError

    def parse_response(self, data, request):
        raise NotImplementedError

    def stream_decoder(self, request):
        raise NotImplementedError

    async def send(self, request):
        self.requests.append((request, list(request.messages)))
        if not self.responses:
            raise AssertionError("ScriptedProvider ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, request):
        response = await self.send(request)
        # split text so callers see more than one chunk
        text = response.text
        if text:
            middle = len(text) // 2
            for part in (text[:middle], text[middle:]):
                if part:
                    yield TextDelta(part)
        yield UsageSummary(response)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pinned to a temp workspace; never reads the developer's .env."""
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY="test-key",
        workspace_dir=str(tmp_path),
        data_dir=str(tmp_path / ".tern"),
        db_path=":memory:",
        retry_initial_delay=0.0,
        retry_jitter=0.0,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped in-memory database with the schema created."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()
