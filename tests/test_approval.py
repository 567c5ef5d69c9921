"""Tests for ApprovalGate: correlation, timeout, cancellation and audit."""

import asyncio

import pytest

from tern.agent.approval import ApprovalGate, Approved, Denied, ToolDescriptor
from tern.events import TOOL_APPROVED, TOOL_AUTO_APPROVED, TOOL_DENIED, EventBus
from tern.tools.registry import Capability


def _descriptor(name: str = "write_file") -> ToolDescriptor:
    return ToolDescriptor(name=name, description="Write a file", capabilities=frozenset({Capability.WRITE}))


async def _answer(gate: ApprovalGate, approved: bool, reason: str = "") -> str:
    request = await gate.requests.get()
    gate.resolve(request.request_id, approved, reason)
    return request.request_id


class TestRequestApproval:
    async def test_approved(self):
        gate = ApprovalGate()
        answer = asyncio.create_task(_answer(gate, True))
        decision = await gate.request_approval(_descriptor(), {"path": "config.json"})
        await answer
        assert isinstance(decision, Approved)
        assert decision.approved
        assert gate.pending_count == 0

    async def test_denied_defaults_reason_to_user(self):
        gate = ApprovalGate()
        answer = asyncio.create_task(_answer(gate, False))
        decision = await gate.request_approval(_descriptor(), {})
        await answer
        assert decision == Denied("user")

    async def test_request_carries_descriptor_and_arguments(self):
        gate = ApprovalGate()
        task = asyncio.create_task(gate.request_approval(_descriptor(), {"path": "a.txt"}, session_id="s1"))
        request = await gate.requests.get()
        assert request.tool.name == "write_file"
        assert request.arguments == {"path": "a.txt"}
        assert request.session_id == "s1"
        gate.resolve(request.request_id, True)
        await task

    async def test_timeout_denies(self):
        gate = ApprovalGate(timeout=0.01)
        decision = await gate.request_approval(_descriptor(), {})
        assert decision == Denied("timeout")
        assert gate.pending_count == 0

    async def test_exactly_one_decision(self):
        gate = ApprovalGate()
        task = asyncio.create_task(gate.request_approval(_descriptor(), {}))
        request = await gate.requests.get()
        assert gate.resolve(request.request_id, True)
        assert not gate.resolve(request.request_id, False)
        assert isinstance(await task, Approved)

    async def test_late_decision_ignored(self):
        gate = ApprovalGate(timeout=0.01)
        await gate.request_approval(_descriptor(), {})
        request = gate.requests.get_nowait()
        assert not gate.resolve(request.request_id, True)

    def test_unknown_id_ignored(self):
        assert not ApprovalGate().resolve("missing", True)


class TestCancel:
    async def test_cancel_all_denies_pending(self):
        gate = ApprovalGate()
        tasks = [asyncio.create_task(gate.request_approval(_descriptor(), {})) for _ in range(2)]
        while gate.pending_count < 2:
            await asyncio.sleep(0)
        assert gate.cancel_all("cancelled") == 2
        assert [await t for t in tasks] == [Denied("cancelled"), Denied("cancelled")]


class TestAudit:
    async def test_decisions_emit_events(self):
        bus = EventBus()
        seen = []

        async def record(event):
            seen.append((event.type, event.data["tool"], event.data["approved"]))

        for event_type in (TOOL_APPROVED, TOOL_DENIED, TOOL_AUTO_APPROVED):
            bus.on(event_type, record)

        gate = ApprovalGate(events=bus)
        answer = asyncio.create_task(_answer(gate, True))
        await gate.request_approval(_descriptor(), {})
        await answer
        answer = asyncio.create_task(_answer(gate, False, "nope"))
        await gate.request_approval(_descriptor("bash"), {})
        await answer
        decision = await gate.record_auto_approval(_descriptor(), {"path": "x"})
        await bus.drain()

        assert isinstance(decision, Approved)
        assert seen == [
            (TOOL_APPROVED, "write_file", True),
            (TOOL_DENIED, "bash", False),
            (TOOL_AUTO_APPROVED, "write_file", True),
        ]


@pytest.mark.parametrize("decision,approved", [(Approved(), True), (Denied("x"), False)])
def test_decision_flag(decision, approved):
    assert decision.approved is approved
