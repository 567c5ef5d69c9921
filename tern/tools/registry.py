"""Tool registry: name -> handler, capability tags and approval flag.

Handlers are async callables ``(arguments, context) -> ToolOutcome`` that
raise ToolError on failure. The registry is frozen before a session starts
and only read afterwards, so concurrent lookups need no locking.

The registry re-checks the two hard rules on every call: a read-only
context never runs a mutating tool, and an approval-gated tool never runs
unless the caller says it was approved (or the context auto-approves).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from tern.providers.types import ToolDefinition

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    NETWORK = "network"
    SYSTEM = "system"
    PLAN = "plan"


MUTATING_CAPABILITIES = frozenset({Capability.WRITE, Capability.EXECUTE, Capability.SYSTEM})


class ToolErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    EXECUTION = "execution"
    PERMISSION_DENIED = "permission_denied"
    APPROVAL_REQUIRED = "approval_required"
    FILE_NOT_FOUND = "file_not_found"
    IO = "io"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class ToolError(Exception):
    def __init__(self, kind: ToolErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return self.message


@dataclass
class ToolExecutionContext:
    """Per-invocation scope. Built fresh for every call."""

    session_id: str
    working_directory: Path
    auto_approve: bool = False
    read_only: bool = False
    timeout_secs: float = 30.0
    env_vars: dict[str, str] = field(default_factory=dict)

    def resolve_path(self, path_str: str) -> Path:
        """Resolve a path and refuse anything outside the working directory."""
        workspace = self.working_directory.resolve()
        path = Path(path_str.replace("\\", "/"))
        target = path.resolve() if path.is_absolute() else (workspace / path).resolve()
        if not target.is_relative_to(workspace):
            raise ToolError(
                ToolErrorKind.PERMISSION_DENIED,
                f"Path '{path_str}' is outside the working directory '{workspace}'.",
            )
        return target


@dataclass
class ToolOutcome:
    content: str
    is_error: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[dict[str, Any], ToolExecutionContext], Awaitable[ToolOutcome]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler = field(compare=False)
    capabilities: frozenset[Capability] = frozenset()
    requires_approval: bool | None = None  # None = derive from capabilities
    timeout: float | None = None  # hard ceiling; None = context.timeout_secs

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        if self.requires_approval is None:
            object.__setattr__(self, "requires_approval", self.mutating)

    @property
    def mutating(self) -> bool:
        return bool(self.capabilities & MUTATING_CAPABILITIES)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )


def _check_required(tool: Tool, arguments: dict[str, Any]) -> None:
    missing = [k for k in tool.input_schema.get("required", []) if k not in arguments]
    if missing:
        raise ToolError(
            ToolErrorKind.INVALID_INPUT,
            f"Missing required parameter(s) for {tool.name}: {', '.join(missing)}",
        )


class ToolRegistry:
    """Registers tools and executes calls against them."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    def register(self, tool: Tool) -> None:
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register '{tool.name}'")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug(
            "Registered tool %s (capabilities=%s, approval=%s)",
            tool.name,
            sorted(c.value for c in tool.capabilities),
            tool.requires_approval,
        )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self, *, read_only: bool = False) -> list[ToolDefinition]:
        """Definitions sent to the model; read-only sessions never see mutating tools."""
        return [
            t.definition() for t in self._tools.values() if not (read_only and t.mutating)
        ]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolExecutionContext,
        *,
        approved: bool = False,
    ) -> ToolOutcome:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolError(ToolErrorKind.NOT_FOUND, f"Unknown tool: {name}")

        if context.read_only and tool.mutating:
            raise ToolError(
                ToolErrorKind.PERMISSION_DENIED,
                f"Tool '{name}' modifies the system and is not allowed in read-only mode",
            )
        if tool.requires_approval and not (approved or context.auto_approve):
            raise ToolError(
                ToolErrorKind.APPROVAL_REQUIRED,
                f"Tool '{name}' requires approval before execution",
            )
        if not isinstance(arguments, dict):
            raise ToolError(ToolErrorKind.INVALID_INPUT, f"Arguments for {name} must be an object")
        _check_required(tool, arguments)

        timeout = tool.timeout or context.timeout_secs
        try:
            return await asyncio.wait_for(tool.handler(arguments, context), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ToolError(
                ToolErrorKind.TIMEOUT, f"Tool '{name}' timed out after {timeout}s"
            ) from e
        except ToolError:
            raise
        except FileNotFoundError as e:
            raise ToolError(ToolErrorKind.FILE_NOT_FOUND, str(e)) from e
        except OSError as e:
            raise ToolError(ToolErrorKind.IO, f"I/O error in {name}: {e}") from e
        except Exception as e:
            logger.exception("Tool %s raised", name)
            raise ToolError(ToolErrorKind.EXECUTION, f"Tool error: {e}") from e
