"""Agent execution core -- the tool-calling loop and its guards.

Public API:
    AgentLoop       - Runs one user turn through provider, approvals and tools
    ApprovalGate    - Human confirmation via request/resolve message passing
    LoopGuard       - Vetoes repeated identical tool-call turns
    ConversationContext - Message history with token budgeting
"""

from tern.agent.approval import ApprovalGate, ApprovalRequest, Approved, Denied, ToolDescriptor
from tern.agent.context import ConversationContext
from tern.agent.loop import (
    AgentLoop,
    TextChunk,
    ToolCallFinished,
    ToolCallRecord,
    ToolCallStarted,
    TurnFinished,
    TurnOutcome,
    TurnState,
)
from tern.agent.loop_guard import CallSignature, LoopGuard

__all__ = [
    "AgentLoop",
    "ApprovalGate",
    "ApprovalRequest",
    "Approved",
    "CallSignature",
    "ConversationContext",
    "Denied",
    "LoopGuard",
    "TextChunk",
    "ToolCallFinished",
    "ToolCallRecord",
    "ToolCallStarted",
    "ToolDescriptor",
    "TurnFinished",
    "TurnOutcome",
    "TurnState",
]
