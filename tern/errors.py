"""Error taxonomy shared by providers, the agent loop and plan mode.

Only the provider classification (NetworkTransient / RateLimited /
Authentication / MalformedRequest) is inspected by the loop to decide on
retries. Everything else ends a turn or a plan with a user-visible message.
"""

from __future__ import annotations


class TernError(Exception):
    """Base class for every error raised by tern."""

    category = "internal"


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(TernError):
    """A provider call failed."""

    category = "provider"
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkTransient(ProviderError):
    """Connection failure, timeout or 5xx. Safe to retry."""

    category = "network"
    retryable = True


class RateLimited(ProviderError):
    """HTTP 429. Retry after the server-suggested delay."""

    category = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class Authentication(ProviderError):
    """Bad or missing credentials. Never retried."""

    category = "authentication"


class MalformedRequest(ProviderError):
    """The backend rejected the request shape. Never retried."""

    category = "malformed_request"


class ConfigurationError(TernError):
    """No usable provider configuration."""

    category = "configuration"


# ---------------------------------------------------------------------------
# Agent loop errors
# ---------------------------------------------------------------------------


class ToolExecutionFailed(TernError):
    """A tool call could not run or raised. The message is the tool result."""

    category = "tool_failed"

    def __init__(self, tool_name: str, reason: str, *, kind: str = "tool_failed") -> None:
        super().__init__(f"Error ({kind}): {reason}")
        self.tool_name = tool_name
        self.reason = reason
        self.kind = kind


class ToolDenied(TernError):
    """The user (or read-only mode) refused a tool call."""

    category = "tool_denied"

    def __init__(self, tool_name: str, reason: str, *, kind: str | None = None) -> None:
        if kind is None:
            message = f"User denied permission to execute {tool_name}: {reason}"
        else:
            message = f"Error ({kind}): {reason}"
        super().__init__(message)
        self.tool_name = tool_name
        self.reason = reason
        self.kind = kind


class LoopDetected(TernError):
    category = "loop_detected"

    def __init__(self, streak: int, signatures: list[str]) -> None:
        super().__init__(
            f"Tool loop detected: the same tool calls were issued {streak} turns in a row "
            f"({', '.join(signatures)})"
        )
        self.streak = streak
        self.signatures = signatures


class IterationLimitExceeded(TernError):
    category = "iteration_limit"

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Stopped after {limit} tool iterations without a final answer. "
            "Try breaking the request into smaller steps."
        )
        self.limit = limit


class TurnCancelled(TernError):
    category = "cancelled"

    def __init__(self) -> None:
        super().__init__("Turn cancelled by the user")


class ProtocolViolation(TernError):
    """A ToolResult references a ToolUse id that was never emitted."""

    category = "protocol"


# ---------------------------------------------------------------------------
# Plan errors
# ---------------------------------------------------------------------------


class PlanError(TernError):
    category = "plan"


class DependencyError(PlanError):
    """A task depends on a missing task or on itself."""

    category = "dependency"


class DependencyCycle(DependencyError):
    category = "dependency_cycle"

    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected between tasks: {', '.join(task_ids)}"
        )
        self.task_ids = task_ids


class PlanStateError(PlanError):
    """Operation not allowed in the plan's current status."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class PersistenceUnavailable(TernError):
    category = "persistence"
