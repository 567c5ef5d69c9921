"""Agent execution loop: one user turn, many provider round-trips.

Each iteration asks the provider for a reply. A reply without tool calls
ends the turn. Otherwise the batch of calls goes through the loop guard,
then the approval gate (sequentially, in emission order), then runs
concurrently; the results go back to the model as one message in
emission order and the loop repeats.

Any TernError ends the turn as FAILED with a categorized error, never the
session. asyncio.CancelledError is re-raised once every outstanding
ToolUse has an error result, so the history stays valid for the next turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union
from uuid import uuid4

from tern.agent.approval import ApprovalGate, Denied, ToolDescriptor
from tern.agent.context import ConversationContext, estimate_text_tokens
from tern.agent.loop_guard import CallSignature, LoopGuard
from tern.config import Settings
from tern.errors import (
    IterationLimitExceeded,
    LoopDetected,
    PersistenceUnavailable,
    ProviderError,
    TernError,
    ToolDenied,
    ToolExecutionFailed,
    TurnCancelled,
)
from tern.events import LOOP_DETECTED, PLAN_STATUS_CHANGED, TURN_FAILED, Event, EventBus
from tern.plan.models import PlanDocument, PlanStatus
from tern.plan.store import PlanStore
from tern.providers.base import Provider
from tern.providers.retry import RetryPolicy, with_retry
from tern.providers.types import (
    Message,
    Request,
    Response,
    StreamDelta,
    TextDelta,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    UsageSummary,
)
from tern.storage.repository import SessionRepository
from tern.tools.registry import Tool, ToolError, ToolExecutionContext, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are tern, a coding assistant working in the user's terminal. "
    "Use the available tools to inspect and change files in the working directory, "
    "run commands and fetch web pages. Prefer small, verifiable steps and explain "
    "what you changed when you are done."
)

PLAN_MODE_PROMPT = (
    "You are in plan mode. Investigate with read-only tools, then build a plan with "
    "the `plan` tool: create it, add ordered tasks with their dependencies, and "
    "finalize it. Do not modify files or run commands until the user approves the plan."
)

LOOP_RESULT = (
    "Tool loop detected: this exact set of tool calls has been repeated too many "
    "times in a row and was not executed. Change approach or answer with what you have."
)

CANCELLED_RESULT = "Cancelled by the user"
INTERRUPTED_RESULT = "Interrupted before a result was recorded"


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    TOOLS_PENDING = "tools_pending"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    FAILED = "failed"


@dataclass
class ToolCallRecord:
    tool_use_id: str
    name: str
    arguments: dict[str, Any]
    content: str
    is_error: bool
    duration_ms: int = 0
    error_category: str | None = None


@dataclass
class TurnOutcome:
    text: str = ""
    state: TurnState = TurnState.IDLE
    error: TernError | None = None
    iterations: int = 0
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state != TurnState.FAILED and self.error is None

    @property
    def error_category(self) -> str | None:
        return self.error.category if self.error else None


# Events yielded by stream_turn


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    tool_use_id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class ToolCallFinished:
    record: ToolCallRecord


@dataclass(frozen=True)
class TurnFinished:
    outcome: TurnOutcome


TurnEvent = Union[TextChunk, ToolCallStarted, ToolCallFinished, TurnFinished]


@dataclass
class _PendingCall:
    use: ToolUseBlock
    tool: Tool | None
    refusal: TernError | None = None  # set when the call will not run


class AgentLoop:
    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        settings: Settings,
        *,
        session_id: str | None = None,
        gate: ApprovalGate | None = None,
        guard: LoopGuard | None = None,
        context: ConversationContext | None = None,
        events: EventBus | None = None,
        plans: PlanStore | None = None,
        history: SessionRepository | None = None,
        working_directory: Path | None = None,
        plan_mode: bool = False,
        system_prompt: str | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.settings = settings
        self.session_id = session_id or uuid4().hex
        self.events = events
        self.gate = gate or ApprovalGate(timeout=settings.approval_timeout, events=events)
        self.guard = guard or LoopGuard(settings.loop_streak, settings.loop_history)
        self.context = context or ConversationContext()
        self.plans = plans
        self.history = history
        self.working_directory = working_directory or Path(settings.workspace_dir)
        self.plan_mode = plan_mode
        self.auto_approve = settings.auto_approve
        self.model = settings.model or provider.default_model
        self.system_prompt = system_prompt or settings.system_prompt or DEFAULT_SYSTEM_PROMPT
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.state = TurnState.IDLE
        self._sleep = sleep
        self._running = False
        self._cancelled = False

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def plan(self) -> PlanDocument | None:
        return self.plans.get(self.session_id) if self.plans else None

    @property
    def read_only(self) -> bool:
        """Plan mode stays read-only until the plan is approved."""
        if not self.plan_mode:
            return False
        plan = self.plan
        return plan is None or plan.status not in (PlanStatus.APPROVED, PlanStatus.IN_PROGRESS)

    @property
    def busy(self) -> bool:
        return self._running

    async def restore(self) -> int:
        """Reload persisted history and plan for this session."""
        restored = 0
        if self.history is not None:
            try:
                messages = await self.history.list_messages(self.session_id)
            except PersistenceUnavailable as e:
                logger.warning("Could not restore session %s: %s", self.session_id[:8], e)
                messages = []
            self.context = ConversationContext(messages)
            restored = len(messages)
            if self.context.unanswered_tool_uses:
                # the previous process stopped between a ToolUse and its result
                await self._answer_outstanding(INTERRUPTED_RESULT)
        if self.plans is not None:
            await self.plans.load(self.session_id)
        logger.info("Restored %d message(s) for session %s", restored, self.session_id[:8])
        return restored

    def reset(self) -> None:
        self.context.clear()
        self.guard.reset()

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelled()

    def cancel(self) -> None:
        """Deny pending approvals and stop the turn before further side effects."""
        if not self._running:
            return
        self._cancelled = True
        self.gate.cancel_all("cancelled")
        logger.info("Cancelling turn for session %s", self.session_id[:8])

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def run_turn(self, user_input: str | Message, *, stream: bool | None = None) -> TurnOutcome:
        outcome = TurnOutcome()
        async for event in self.stream_turn(user_input, stream=stream):
            if isinstance(event, TurnFinished):
                outcome = event.outcome
        return outcome

    async def stream_turn(
        self, user_input: str | Message, *, stream: bool | None = None
    ) -> AsyncIterator[TurnEvent]:
        if self._running:
            raise RuntimeError(f"Session {self.session_id[:8]} already has a turn in progress")
        self._running = True
        self._cancelled = False
        streaming = self.settings.stream if stream is None else stream
        streaming = streaming and self.provider.supports_streaming
        outcome = TurnOutcome()

        try:
            message = user_input if isinstance(user_input, Message) else Message.user(user_input)
            await self._record(message)
            async for event in self._drive(outcome, streaming):
                yield event
        except asyncio.CancelledError:
            self.gate.cancel_all("cancelled")
            await self._answer_outstanding(CANCELLED_RESULT)
            logger.info("Turn for session %s was cancelled", self.session_id[:8])
            raise
        except TernError as e:
            outcome.state = TurnState.FAILED
            outcome.error = e
            outcome.text = str(e)
            logger.warning("Turn failed (%s): %s", e.category, e)
            await self._emit(TURN_FAILED, {"category": e.category, "error": str(e)})
        finally:
            self._running = False
            self.state = TurnState.IDLE

        await self._persist_usage(outcome)
        yield TurnFinished(outcome)

    async def _drive(self, outcome: TurnOutcome, streaming: bool) -> AsyncIterator[TurnEvent]:
        limit = self.settings.max_iterations
        while True:
            self._check_cancelled()
            if outcome.iterations >= limit:
                raise IterationLimitExceeded(limit)
            outcome.iterations += 1

            self.state = TurnState.AWAITING_PROVIDER
            request = self._build_request(streaming)
            if streaming:
                response: Response | None = None
                async for delta in self._stream_response(request):
                    if isinstance(delta, UsageSummary):
                        response = delta.response
                    elif isinstance(delta, TextDelta):
                        yield TextChunk(delta.text)
                assert response is not None  # every stream ends with a UsageSummary
            else:
                response = await with_retry(
                    lambda: self.provider.send(request), self.retry_policy, sleep=self._sleep
                )

            outcome.usage = outcome.usage + response.usage
            outcome.cost += self.provider.calculate_cost(response.model or self.model, response.usage)
            await self._record(response.message)

            tool_uses = response.tool_uses
            if not tool_uses:
                outcome.text = response.text
                outcome.state = TurnState.IDLE
                return

            self.state = TurnState.TOOLS_PENDING
            verdict = self.guard.check([CallSignature.of(u.name, u.input) for u in tool_uses])
            if verdict.vetoed:
                await self._record(
                    Message.tool_results([ToolResultBlock(u.id, LOOP_RESULT, is_error=True) for u in tool_uses])
                )
                signatures = sorted(str(s) for s in verdict.signatures)
                await self._emit(LOOP_DETECTED, {"streak": verdict.streak, "signatures": signatures})
                raise LoopDetected(verdict.streak, signatures)

            plan_before = self._plan_snapshot()
            pending = await self._decide(tool_uses)

            if self._cancelled:
                await self._answer_outstanding(CANCELLED_RESULT)
                raise TurnCancelled()

            self.state = TurnState.EXECUTING
            for call in pending:
                yield ToolCallStarted(call.use.id, call.use.name, call.use.input)
            records = await self._execute(pending)
            outcome.tool_calls.extend(records)
            for record in records:
                yield ToolCallFinished(record)

            await self._record(
                Message.tool_results(
                    [ToolResultBlock(r.tool_use_id, r.content, r.is_error) for r in records]
                )
            )
            await self._sync_plan(plan_before)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _build_request(self, streaming: bool) -> Request:
        read_only = self.read_only
        system = self.system_prompt
        if self.plan_mode and read_only:
            system = f"{system}\n\n{PLAN_MODE_PROMPT}"

        window = self.provider.context_window(self.model)
        if window:
            budget = window - self.settings.max_tokens - estimate_text_tokens(system)
            self.context.trim_to_fit(max(budget, 1))

        tools = self.registry.tool_definitions(read_only=read_only) if self.provider.supports_tools else []
        return Request(
            model=self.model,
            messages=self.context.messages,
            system=system,
            tools=tools,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            stream=streaming,
            metadata={"session_id": self.session_id},
        )

    async def _stream_response(self, request: Request) -> AsyncIterator[StreamDelta]:
        """Stream one reply, retrying only while nothing has been yielded."""
        attempt = 1
        while True:
            emitted = False
            try:
                async for delta in self.provider.stream(request):
                    if not isinstance(delta, UsageSummary):
                        emitted = True
                    yield delta
                return
            except ProviderError as e:
                if emitted or not e.retryable or attempt >= self.retry_policy.max_attempts:
                    raise
                delay = self.retry_policy.delay_for(e, attempt)
                logger.warning(
                    "Stream error (%s), retrying in %.2fs (attempt %d/%d): %s",
                    e.category,
                    delay,
                    attempt + 1,
                    self.retry_policy.max_attempts,
                    e,
                )
                await self._sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Approval + execution
    # ------------------------------------------------------------------

    async def _decide(self, tool_uses: list[ToolUseBlock]) -> list[_PendingCall]:
        """Resolve each call to run-or-refuse, one approval at a time."""
        read_only = self.read_only
        pending: list[_PendingCall] = []
        for use in tool_uses:
            tool = self.registry.get(use.name)
            call = _PendingCall(use=use, tool=tool)
            pending.append(call)

            if self._cancelled:
                call.refusal = TurnCancelled()
            elif tool is None:
                call.refusal = ToolExecutionFailed(use.name, f"Unknown tool: {use.name}", kind="not_found")
            elif read_only and tool.mutating:
                call.refusal = ToolDenied(
                    use.name,
                    f"Tool '{use.name}' modifies the system and is not allowed in read-only mode",
                    kind="permission_denied",
                )
            elif tool.requires_approval:
                descriptor = ToolDescriptor.of(tool)
                if self.auto_approve:
                    decision = await self.gate.record_auto_approval(
                        descriptor, use.input, session_id=self.session_id
                    )
                else:
                    self.state = TurnState.AWAITING_APPROVAL
                    decision = await self.gate.request_approval(
                        descriptor, use.input, session_id=self.session_id
                    )
                if isinstance(decision, Denied):
                    call.refusal = ToolDenied(use.name, decision.reason)
        return pending

    async def _execute(self, pending: list[_PendingCall]) -> list[ToolCallRecord]:
        if self.settings.parallel_tools:
            return list(await asyncio.gather(*(self._execute_one(c) for c in pending)))
        return [await self._execute_one(c) for c in pending]

    async def _execute_one(self, call: _PendingCall) -> ToolCallRecord:
        use = call.use
        if call.refusal is not None:
            return ToolCallRecord(
                use.id, use.name, use.input, str(call.refusal), True, error_category=call.refusal.category
            )

        context = ToolExecutionContext(
            session_id=self.session_id,
            working_directory=self.working_directory,
            auto_approve=self.auto_approve,
            read_only=self.read_only,
            timeout_secs=self.settings.tool_timeout,
        )
        start = time.monotonic()
        category = None
        try:
            result = await self.registry.execute(use.name, use.input, context, approved=True)
            content, is_error = result.content, result.is_error
        except ToolError as e:
            logger.info("Tool %s failed (%s): %s", use.name, e.kind.value, e.message)
            failure = ToolExecutionFailed(use.name, e.message, kind=e.kind.value)
            content, is_error, category = str(failure), True, failure.category
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug("Tool %s finished in %dms (error=%s)", use.name, duration_ms, is_error)
        return ToolCallRecord(use.id, use.name, use.input, content, is_error, duration_ms, category)

    # ------------------------------------------------------------------
    # Write-behind persistence
    # ------------------------------------------------------------------

    async def _record(self, message: Message) -> None:
        self.context.append(message)
        if self.history is None:
            return
        try:
            await self.history.append_message(self.session_id, message)
        except PersistenceUnavailable as e:
            logger.warning("Message not persisted for session %s: %s", self.session_id[:8], e)

    async def _answer_outstanding(self, content: str) -> None:
        """Record an error result for every ToolUse that has none yet."""
        outstanding = self.context.unanswered_tool_uses
        if not outstanding:
            return
        uses = [u for m in self.context.messages for u in m.tool_uses if u.id in outstanding]
        await self._record(
            Message.tool_results([ToolResultBlock(u.id, content, is_error=True) for u in uses])
        )

    async def _persist_usage(self, outcome: TurnOutcome) -> None:
        if self.history is None or not outcome.usage.total_tokens:
            return
        try:
            await self.history.add_usage(self.session_id, outcome.usage, outcome.cost)
        except PersistenceUnavailable as e:
            logger.warning("Usage not persisted for session %s: %s", self.session_id[:8], e)

    def _plan_snapshot(self) -> dict[str, Any] | None:
        plan = self.plan
        return plan.to_dict() if plan else None

    async def _sync_plan(self, before: dict[str, Any] | None) -> None:
        plan = self.plan
        if plan is None or self.plans is None:
            return
        after = plan.to_dict()
        if after == before:
            return
        await self.plans.save(plan)
        old_status = before["status"] if before and before["id"] == plan.id else None
        if old_status != plan.status.value:
            await self._emit(
                PLAN_STATUS_CHANGED,
                {"plan_id": plan.id, "from": old_status, "to": plan.status.value},
            )

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events:
            await self.events.emit(Event(type=event_type, data=data, session_id=self.session_id))
