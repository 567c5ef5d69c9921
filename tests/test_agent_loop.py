"""Tests for AgentLoop: tool batches, approvals, loop veto, limits, plan mode.

The provider is scripted (tests.conftest.ScriptedProvider); tools are the
real built-ins running against a tmp_path workspace.
"""

import asyncio

import pytest

from tern.agent.loop import (
    INTERRUPTED_RESULT,
    LOOP_RESULT,
    PLAN_MODE_PROMPT,
    AgentLoop,
    TextChunk,
    ToolCallFinished,
    ToolCallStarted,
    TurnFinished,
    TurnState,
)
from tern.errors import Authentication, NetworkTransient
from tern.events import LOOP_DETECTED, PLAN_STATUS_CHANGED, TURN_FAILED, EventBus
from tern.plan.models import PlanStatus
from tern.plan.store import PlanStore
from tern.providers.types import Message, Role, ToolUseBlock
from tern.storage.repository import SessionRepository
from tern.tools.builtin import register_builtin_tools
from tern.tools.plan_tool import register_plan_tool
from tern.tools.registry import ToolRegistry
from tests.conftest import ScriptedProvider, text_reply, tool_reply

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_loop(settings, responses, *, plans: PlanStore | None = None, **kw):
    provider = ScriptedProvider(responses)
    registry = ToolRegistry()
    register_builtin_tools(registry, settings)
    if plans is not None:
        register_plan_tool(registry, plans)
    registry.freeze()
    loop = AgentLoop(provider, registry, settings, session_id="sess-1", plans=plans, **kw)
    return loop, provider


def _last_results(provider: ScriptedProvider, request_index: int = -1):
    """Tool results the model saw at the start of the given request."""
    _, messages = provider.requests[request_index]
    last = messages[-1]
    assert last.role == Role.TOOL_RESULT
    return last.tool_results_blocks


async def _next_approval(loop: AgentLoop):
    return await asyncio.wait_for(loop.gate.requests.get(), timeout=2)


# ---------------------------------------------------------------------------
# Basic turns
# ---------------------------------------------------------------------------


class TestTurns:
    async def test_text_reply_ends_turn(self, settings):
        loop, provider = _make_loop(settings, [text_reply("Hello there")])
        outcome = await loop.run_turn("hi")
        assert outcome.succeeded
        assert outcome.text == "Hello there"
        assert outcome.iterations == 1
        assert outcome.usage.input_tokens == 10
        assert outcome.cost == pytest.approx((10 * 3.0 + 5 * 15.0) / 1_000_000)
        assert loop.state == TurnState.IDLE
        assert len(loop.context) == 2

    async def test_results_follow_emission_order(self, settings, tmp_path):
        (tmp_path / "a.txt").write_text("alpha")
        loop, provider = _make_loop(
            settings,
            [
                tool_reply(
                    ("c1", "read_file", {"path": "a.txt"}),
                    ("c2", "list_dir", {}),
                    ("c3", "read_file", {"path": "missing.txt"}),
                ),
                text_reply("done"),
            ],
        )
        outcome = await loop.run_turn("look around")

        results = _last_results(provider)
        assert [r.tool_use_id for r in results] == ["c1", "c2", "c3"]
        assert results[0].content == "alpha"
        assert results[2].is_error
        assert results[2].content.startswith("Error (file_not_found)")
        assert outcome.tool_calls[0].error_category is None
        assert outcome.tool_calls[2].error_category == "tool_failed"
        assert [c.tool_use_id for c in outcome.tool_calls] == ["c1", "c2", "c3"]
        assert outcome.text == "done"

    async def test_sequential_execution(self, settings, tmp_path):
        (tmp_path / "a.txt").write_text("alpha")
        loop, provider = _make_loop(
            settings.model_copy(update={"parallel_tools": False}),
            [tool_reply(("c1", "read_file", {"path": "a.txt"}), ("c2", "list_dir", {})), text_reply("ok")],
        )
        await loop.run_turn("go")
        assert [r.tool_use_id for r in _last_results(provider)] == ["c1", "c2"]

    async def test_unknown_tool_reported_to_model(self, settings):
        loop, provider = _make_loop(settings, [tool_reply(("c1", "frobnicate", {})), text_reply("sorry")])
        outcome = await loop.run_turn("go")
        assert outcome.succeeded
        assert _last_results(provider)[0].content == "Error (not_found): Unknown tool: frobnicate"
        assert outcome.tool_calls[0].error_category == "tool_failed"

    async def test_system_prompt_and_tools_sent(self, settings):
        loop, provider = _make_loop(settings, [text_reply("ok")], system_prompt="Be brief.")
        await loop.run_turn("hi")
        request, _ = provider.requests[0]
        assert request.system == "Be brief."
        assert "write_file" in [t.name for t in request.tools]
        assert request.metadata == {"session_id": "sess-1"}


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class TestApprovals:
    async def test_approved_write_runs(self, settings, tmp_path):
        loop, provider = _make_loop(
            settings,
            [tool_reply(("c1", "write_file", {"path": "config.json", "content": "{}"})), text_reply("written")],
        )
        turn = asyncio.create_task(loop.run_turn("create config.json"))
        request = await _next_approval(loop)
        assert request.tool.name == "write_file"
        assert request.arguments["path"] == "config.json"
        assert loop.state == TurnState.AWAITING_APPROVAL
        loop.gate.resolve(request.request_id, True)

        outcome = await turn
        assert outcome.succeeded
        assert (tmp_path / "config.json").read_text() == "{}"
        assert _last_results(provider)[0].content.startswith("File written successfully: config.json")

    async def test_denied_write_is_reported(self, settings, tmp_path):
        loop, provider = _make_loop(
            settings,
            [tool_reply(("c1", "write_file", {"path": "config.json", "content": "{}"})), text_reply("ok")],
        )
        turn = asyncio.create_task(loop.run_turn("create config.json"))
        request = await _next_approval(loop)
        loop.gate.resolve(request.request_id, False, "not now")

        outcome = await turn
        assert outcome.succeeded
        assert not (tmp_path / "config.json").exists()
        result = _last_results(provider)[0]
        assert result.is_error
        assert result.content == "User denied permission to execute write_file: not now"
        assert outcome.tool_calls[0].error_category == "tool_denied"

    async def test_auto_approve_records_decision(self, settings, tmp_path):
        bus = EventBus()
        seen = []

        async def record(event):
            seen.append(event.data["tool"])

        bus.on("tool_auto_approved", record)
        loop, _ = _make_loop(
            settings.model_copy(update={"auto_approve": True}),
            [tool_reply(("c1", "write_file", {"path": "a.txt", "content": "x"})), text_reply("ok")],
            events=bus,
        )
        await loop.run_turn("write")
        await bus.drain()
        assert (tmp_path / "a.txt").exists()
        assert loop.gate.requests.empty()
        assert seen == ["write_file"]

    async def test_concurrent_turn_rejected_and_cancel(self, settings, tmp_path):
        loop, _ = _make_loop(
            settings,
            [tool_reply(("c1", "write_file", {"path": "a.txt", "content": "x"}))],
        )
        turn = asyncio.create_task(loop.run_turn("write"))
        await _next_approval(loop)
        assert loop.busy
        with pytest.raises(RuntimeError, match="already has a turn in progress"):
            await loop.run_turn("again")

        loop.cancel()
        outcome = await turn
        assert outcome.error_category == "cancelled"
        assert not (tmp_path / "a.txt").exists()
        assert not loop.busy
        assert loop.gate.pending_count == 0
        last = loop.context.messages[-1]
        assert last.tool_results_blocks[0].content == "Cancelled by the user"

    async def test_task_cancellation_answers_outstanding_calls(self, settings, tmp_path):
        loop, provider = _make_loop(
            settings,
            [
                tool_reply(
                    ("c1", "write_file", {"path": "a.txt", "content": "x"}),
                    ("c2", "write_file", {"path": "b.txt", "content": "y"}),
                ),
                text_reply("ok"),
            ],
        )
        turn = asyncio.create_task(loop.run_turn("write both"))
        await _next_approval(loop)
        turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await turn

        assert not loop.busy
        assert loop.gate.pending_count == 0
        assert loop.context.unanswered_tool_uses == set()
        results = loop.context.messages[-1].tool_results_blocks
        assert [r.tool_use_id for r in results] == ["c1", "c2"]
        assert all(r.is_error and r.content == "Cancelled by the user" for r in results)
        assert not (tmp_path / "a.txt").exists()

        # the next turn sends a well-formed history
        outcome = await loop.run_turn("never mind")
        assert outcome.succeeded
        _, messages = provider.requests[-1]
        assert [m.role for m in messages[-3:]] == [Role.ASSISTANT, Role.TOOL_RESULT, Role.USER]


# ---------------------------------------------------------------------------
# Limits and loop detection
# ---------------------------------------------------------------------------


class TestLimits:
    async def test_iteration_limit(self, settings):
        loop, provider = _make_loop(
            settings.model_copy(update={"max_iterations": 2}),
            [tool_reply(("c1", "list_dir", {"path": "."})), tool_reply(("c2", "glob", {"pattern": "*"}))],
        )
        outcome = await loop.run_turn("explore")
        assert outcome.state == TurnState.FAILED
        assert outcome.error_category == "iteration_limit"
        assert outcome.iterations == 2
        assert len(provider.requests) == 2

    async def test_fourth_identical_turn_vetoed(self, settings):
        bus = EventBus()
        loop, provider = _make_loop(
            settings,
            [tool_reply((f"c{i}", "read_file", {"path": ".\\a.txt" if i % 2 else "./a.txt"})) for i in range(4)],
            events=bus,
        )
        outcome = await loop.run_turn("read it")

        assert outcome.error_category == "loop_detected"
        assert len(provider.requests) == 4
        assert len(outcome.tool_calls) == 3
        vetoed = loop.context.messages[-1].tool_results_blocks[0]
        assert vetoed.tool_use_id == "c3"
        assert vetoed.content == LOOP_RESULT

        types = []

        async def record(event):
            types.append(event.type)

        bus.on(LOOP_DETECTED, record)
        bus.on(TURN_FAILED, record)
        await bus.drain()
        assert types == [LOOP_DETECTED, TURN_FAILED]

    async def test_distinct_paths_never_vetoed(self, settings):
        responses = [tool_reply((f"c{i}", "read_file", {"path": f"f{i}.txt"})) for i in range(6)]
        loop, _ = _make_loop(settings, responses + [text_reply("read them all")])
        outcome = await loop.run_turn("read everything")
        assert outcome.succeeded


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------


class TestProviderFailures:
    async def test_authentication_fails_turn_not_session(self, settings):
        loop, _ = _make_loop(settings, [Authentication("bad key", status_code=401), text_reply("back")])
        outcome = await loop.run_turn("hi")
        assert outcome.error_category == "authentication"
        assert outcome.text == "bad key"
        assert (await loop.run_turn("hi again")).text == "back"

    async def test_transient_error_retried(self, settings):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        loop, provider = _make_loop(
            settings, [NetworkTransient("reset"), text_reply("ok")], sleep=fake_sleep
        )
        outcome = await loop.run_turn("hi", stream=False)
        assert outcome.text == "ok"
        assert len(delays) == 1
        assert len(provider.requests) == 2

    async def test_stream_retried_before_output(self, settings):
        loop, _ = _make_loop(settings, [NetworkTransient("reset"), text_reply("ok")], sleep=lambda _: asyncio.sleep(0))
        outcome = await loop.run_turn("hi", stream=True)
        assert outcome.text == "ok"


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    async def test_events_in_order(self, settings):
        loop, _ = _make_loop(
            settings, [tool_reply(("c1", "list_dir", {}), text="Looking"), text_reply("All done")]
        )
        events = [e async for e in loop.stream_turn("list", stream=True)]

        kinds = [type(e) for e in events]
        assert kinds.index(ToolCallStarted) < kinds.index(ToolCallFinished)
        assert isinstance(events[-1], TurnFinished)
        assert "".join(e.text for e in events if isinstance(e, TextChunk)) == "LookingAll done"
        assert events[-1].outcome.text == "All done"


# ---------------------------------------------------------------------------
# Plan mode
# ---------------------------------------------------------------------------


class TestPlanMode:
    async def test_read_only_until_approved(self, settings, tmp_path):
        plans = PlanStore()
        loop, provider = _make_loop(
            settings,
            [tool_reply(("c1", "write_file", {"path": "a.txt", "content": "x"})), text_reply("ok")],
            plans=plans,
            plan_mode=True,
        )
        await loop.run_turn("change things")

        request, _ = provider.requests[0]
        names = [t.name for t in request.tools]
        assert "write_file" not in names and "bash" not in names
        assert "read_file" in names and "plan" in names
        assert PLAN_MODE_PROMPT in request.system
        assert loop.gate.requests.empty()
        assert _last_results(provider)[0].content.startswith("Error (permission_denied)")
        assert not (tmp_path / "a.txt").exists()

    async def test_model_builds_plan(self, settings):
        bus = EventBus()
        plans = PlanStore()
        loop, _ = _make_loop(
            settings,
            [
                tool_reply(("c1", "plan", {"operation": "create", "title": "Add cache", "description": "HTTP cache"})),
                tool_reply(("c2", "plan", {"operation": "add_task", "title": "Write cache"})),
                tool_reply(("c3", "plan", {"operation": "add_task", "title": "Test cache", "dependencies": [1]})),
                tool_reply(("c4", "plan", {"operation": "finalize"})),
                text_reply("Plan ready for approval"),
            ],
            plans=plans,
            plan_mode=True,
            events=bus,
        )
        outcome = await loop.run_turn("plan a cache")
        assert outcome.succeeded

        plan = plans.get("sess-1")
        assert plan.status == PlanStatus.PENDING_APPROVAL
        assert [t.title for t in plan.tasks] == ["Write cache", "Test cache"]
        assert loop.read_only

        transitions = []

        async def record(event):
            transitions.append((event.data["from"], event.data["to"]))

        bus.on(PLAN_STATUS_CHANGED, record)
        await bus.drain()
        assert transitions == [(None, "draft"), ("draft", "pending_approval")]

        plan.approve()
        assert not loop.read_only


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestHistory:
    async def test_messages_and_usage_persisted(self, settings, db):
        history = SessionRepository(db)
        await history.create("sess-1")
        loop, _ = _make_loop(
            settings, [tool_reply(("c1", "list_dir", {})), text_reply("done")], history=history
        )
        await loop.run_turn("list")

        messages = await history.list_messages("sess-1")
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL_RESULT, Role.ASSISTANT]
        record = await history.get("sess-1")
        assert record.input_tokens == 20
        assert record.output_tokens == 10

        restored, _ = _make_loop(settings, [], history=history)
        assert await restored.restore() == 4
        assert restored.context.unanswered_tool_uses == set()

    async def test_restore_closes_interrupted_tool_calls(self, settings, db):
        history = SessionRepository(db)
        await history.create("sess-1")
        await history.append_message("sess-1", Message.user("list"))
        await history.append_message(
            "sess-1", Message(role=Role.ASSISTANT, content=[ToolUseBlock(id="c1", name="list_dir", input={})])
        )

        loop, _ = _make_loop(settings, [], history=history)
        assert await loop.restore() == 2
        assert loop.context.unanswered_tool_uses == set()
        result = loop.context.messages[-1].tool_results_blocks[0]
        assert (result.tool_use_id, result.content, result.is_error) == ("c1", INTERRUPTED_RESULT, True)
        assert len(await history.list_messages("sess-1")) == 3

    async def test_database_outage_does_not_fail_turn(self, settings):
        from tern.storage.database import Database

        database = Database(settings)
        await database.connect()
        await database.disconnect()
        loop, _ = _make_loop(settings, [text_reply("still here")], history=SessionRepository(database))
        outcome = await loop.run_turn("hi")
        assert outcome.text == "still here"
