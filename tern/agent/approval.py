"""Approval gate: human confirmation brokered by message passing.

The gate puts an ApprovalRequest (with a correlation id) on its outbound
queue and suspends the calling task on a per-request future. Whatever
presents the request (CLI prompt, test, remote UI) answers with
resolve(request_id, approved, reason). Exactly one decision is accepted
per request; an unanswered request resolves to Denied("timeout").
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Union
from uuid import uuid4

from tern.events import TOOL_APPROVED, TOOL_AUTO_APPROVED, TOOL_DENIED, Event, EventBus
from tern.tools.registry import Capability, Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """What the operator is shown about a tool."""

    name: str
    description: str
    capabilities: frozenset[Capability] = frozenset()

    @classmethod
    def of(cls, tool: Tool) -> "ToolDescriptor":
        return cls(name=tool.name, description=tool.description, capabilities=tool.capabilities)


@dataclass(frozen=True)
class Approved:
    reason: str = ""
    approved: bool = True


@dataclass(frozen=True)
class Denied:
    reason: str
    approved: bool = False


ApprovalDecision = Union[Approved, Denied]


@dataclass(frozen=True)
class ApprovalRequest:
    request_id: str
    tool: ToolDescriptor
    arguments: dict[str, Any]
    session_id: str = ""
    timeout: float = 300.0
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ApprovalGate:
    def __init__(self, timeout: float = 300.0, events: EventBus | None = None) -> None:
        self.timeout = timeout
        self.requests: asyncio.Queue[ApprovalRequest] = asyncio.Queue()
        self._pending: dict[str, asyncio.Future[ApprovalDecision]] = {}
        self._events = events

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def request_approval(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        *,
        session_id: str = "",
    ) -> ApprovalDecision:
        request = ApprovalRequest(
            request_id=uuid4().hex,
            tool=tool,
            arguments=arguments,
            session_id=session_id,
            timeout=self.timeout,
        )
        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = future
        await self.requests.put(request)
        logger.debug("Approval requested %s for %s", request.request_id[:8], tool.name)

        try:
            decision = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Approval request %s for %s timed out after %.0fs",
                request.request_id[:8],
                tool.name,
                self.timeout,
            )
            decision = Denied("timeout")
        finally:
            self._pending.pop(request.request_id, None)

        await self._audit(request.request_id, tool, arguments, decision, session_id)
        return decision

    def resolve(self, request_id: str, approved: bool, reason: str = "") -> bool:
        """Deliver the decision for one request. Late or unknown ids are ignored."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.warning("Ignoring decision for unknown or settled request %s", request_id[:8])
            return False
        future.set_result(Approved(reason) if approved else Denied(reason or "user"))
        return True

    def cancel_all(self, reason: str = "cancelled") -> int:
        """Deny every outstanding request. Returns how many were pending."""
        count = 0
        for future in list(self._pending.values()):
            if not future.done():
                future.set_result(Denied(reason))
                count += 1
        if count:
            logger.info("Denied %d pending approval request(s): %s", count, reason)
        return count

    async def record_auto_approval(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        *,
        session_id: str = "",
        reason: str = "auto-approved",
    ) -> ApprovalDecision:
        """Auto-approval skips the wait but leaves the same audit trail."""
        decision = Approved(reason)
        await self._audit(uuid4().hex, tool, arguments, decision, session_id, auto=True)
        return decision

    async def _audit(
        self,
        request_id: str,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        decision: ApprovalDecision,
        session_id: str,
        *,
        auto: bool = False,
    ) -> None:
        if auto:
            event_type = TOOL_AUTO_APPROVED
            logger.info("Auto-approved %s (%s)", tool.name, decision.reason)
        elif decision.approved:
            event_type = TOOL_APPROVED
            logger.info("Approved %s", tool.name)
        else:
            event_type = TOOL_DENIED
            logger.info("Denied %s: %s", tool.name, decision.reason)

        if self._events:
            await self._events.emit(
                Event(
                    type=event_type,
                    session_id=session_id or None,
                    data={
                        "request_id": request_id,
                        "tool": tool.name,
                        "capabilities": sorted(c.value for c in tool.capabilities),
                        "arguments": arguments,
                        "approved": decision.approved,
                        "reason": decision.reason,
                    },
                )
            )
