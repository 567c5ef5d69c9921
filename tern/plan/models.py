"""PlanDocument and PlanTask: a dependency-ordered set of sub-goals.

Lifecycle: draft -> pending_approval -> approved -> in_progress -> completed,
with rejected/cancelled as exits. Tasks may only be added while the plan is
a draft, and the only way out of draft is finalize(), which re-validates
the dependency graph.

Dependencies are stored as given and resolved lazily against either a
task's id or its 1-based order number, so a task may name one that is
added later. Missing, self and circular references surface at finalize().
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from tern.errors import DependencyCycle, DependencyError, PlanStateError

MAX_TITLE_LENGTH = 200
MAX_TEXT_LENGTH = 5000


class PlanStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (PlanStatus.COMPLETED, PlanStatus.REJECTED, PlanStatus.CANCELLED)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class TaskType(str, Enum):
    RESEARCH = "research"
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    TEST = "test"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    CONFIGURATION = "configuration"
    BUILD = "build"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: str | None) -> "TaskType":
        try:
            return cls((raw or "other").lower())
        except ValueError:
            return cls.OTHER


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def validate_text(field_name: str, value: Any, max_length: int) -> str:
    """Plan text fields must be non-empty strings within a length limit."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    if len(value) > max_length:
        raise ValueError(f"{field_name} exceeds {max_length} characters ({len(value)})")
    return value.strip()


@dataclass
class PlanTask:
    id: str
    order: int
    title: str
    description: str = ""
    task_type: TaskType = TaskType.OTHER
    dependencies: list[str] = field(default_factory=list)
    complexity: int = 3
    acceptance_criteria: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    notes: str | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.complexity = max(1, min(5, int(self.complexity)))

    @property
    def finished(self) -> bool:
        """Counts as satisfied for dependants."""
        return self.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)

    @property
    def terminal(self) -> bool:
        return self.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

    @property
    def complexity_stars(self) -> str:
        return "★" * self.complexity + "☆" * (5 - self.complexity)

    def start(self) -> None:
        if self.status != TaskStatus.PENDING:
            raise PlanStateError(f"Task {self.order} cannot start from {self.status.value}")
        self.status = TaskStatus.IN_PROGRESS

    def complete(self, notes: str | None = None) -> None:
        if self.status != TaskStatus.IN_PROGRESS:
            raise PlanStateError(f"Task {self.order} cannot complete from {self.status.value}")
        self.status = TaskStatus.COMPLETED
        self.completed_at = _now()
        if notes:
            self.notes = notes

    def fail(self, reason: str) -> None:
        self.status = TaskStatus.FAILED
        self.notes = reason

    def block(self, reason: str) -> None:
        self.status = TaskStatus.BLOCKED
        self.notes = reason

    def skip(self, reason: str | None = None) -> None:
        if self.terminal:
            raise PlanStateError(f"Task {self.order} is already {self.status.value}")
        self.status = TaskStatus.SKIPPED
        self.completed_at = _now()
        if reason:
            self.notes = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order": self.order,
            "title": self.title,
            "description": self.description,
            "task_type": self.task_type.value,
            "dependencies": list(self.dependencies),
            "complexity": self.complexity,
            "acceptance_criteria": list(self.acceptance_criteria),
            "status": self.status.value,
            "notes": self.notes,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanTask":
        return cls(
            id=data["id"],
            order=data["order"],
            title=data["title"],
            description=data.get("description", ""),
            task_type=TaskType.parse(data.get("task_type")),
            dependencies=list(data.get("dependencies", [])),
            complexity=data.get("complexity", 3),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            status=TaskStatus(data.get("status", "pending")),
            notes=data.get("notes"),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class PlanDocument:
    id: str
    session_id: str
    title: str
    description: str
    context: str = ""
    risks: list[str] = field(default_factory=list)
    test_strategy: str = ""
    technical_stack: list[str] = field(default_factory=list)
    status: PlanStatus = PlanStatus.DRAFT
    tasks: list[PlanTask] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    approved_at: datetime | None = None

    @classmethod
    def new(
        cls,
        session_id: str,
        title: str,
        description: str,
        *,
        context: str = "",
        risks: list[str] | None = None,
        test_strategy: str = "",
        technical_stack: list[str] | None = None,
    ) -> "PlanDocument":
        return cls(
            id=uuid4().hex,
            session_id=session_id,
            title=validate_text("title", title, MAX_TITLE_LENGTH),
            description=validate_text("description", description, MAX_TEXT_LENGTH),
            context=validate_text("context", context, MAX_TEXT_LENGTH) if context else "",
            risks=list(risks or []),
            test_strategy=test_strategy,
            technical_stack=list(technical_stack or []),
        )

    # ------------------------------------------------------------------
    # Editing (draft only)
    # ------------------------------------------------------------------

    def _require(self, *allowed: PlanStatus) -> None:
        if self.status not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise PlanStateError(
                f"Plan '{self.title}' is {self.status.value}; operation requires {names}"
            )

    def touch(self) -> None:
        self.updated_at = _now()

    @property
    def is_empty_draft(self) -> bool:
        return self.status == PlanStatus.DRAFT and not self.tasks

    def add_task(
        self,
        title: str,
        description: str = "",
        *,
        task_type: TaskType | str = TaskType.OTHER,
        dependencies: list[str | int] | None = None,
        complexity: int = 3,
        acceptance_criteria: list[str] | None = None,
        task_id: str | None = None,
    ) -> PlanTask:
        self._require(PlanStatus.DRAFT)
        task = PlanTask(
            id=task_id or uuid4().hex,
            order=len(self.tasks) + 1,
            title=validate_text("title", title, MAX_TITLE_LENGTH),
            description=validate_text("description", description, MAX_TEXT_LENGTH) if description else "",
            task_type=task_type if isinstance(task_type, TaskType) else TaskType.parse(task_type),
            dependencies=[str(d) for d in (dependencies or [])],
            complexity=complexity,
            acceptance_criteria=list(acceptance_criteria or []),
        )
        if any(t.id == task.id for t in self.tasks):
            raise ValueError(f"Duplicate task id: {task.id}")
        self.tasks.append(task)
        self.touch()
        return task

    def update(
        self,
        *,
        title: str | None = None,
        description: str | None = None,
        context: str | None = None,
        risks: list[str] | None = None,
        test_strategy: str | None = None,
        technical_stack: list[str] | None = None,
    ) -> None:
        self._require(PlanStatus.DRAFT)
        if title is not None:
            self.title = validate_text("title", title, MAX_TITLE_LENGTH)
        if description is not None:
            self.description = validate_text("description", description, MAX_TEXT_LENGTH)
        if context is not None:
            self.context = validate_text("context", context, MAX_TEXT_LENGTH)
        if risks is not None:
            self.risks = list(risks)
        if test_strategy is not None:
            self.test_strategy = test_strategy
        if technical_stack is not None:
            self.technical_stack = list(technical_stack)
        self.touch()

    # ------------------------------------------------------------------
    # Dependency graph
    # ------------------------------------------------------------------

    def task(self, ref: str | int) -> PlanTask | None:
        """Look a task up by id or by its order number."""
        ref = str(ref)
        for t in self.tasks:
            if t.id == ref:
                return t
        for t in self.tasks:
            if str(t.order) == ref:
                return t
        return None

    def dependencies_of(self, task: PlanTask) -> list[PlanTask]:
        return [d for d in (self.task(ref) for ref in task.dependencies) if d is not None]

    def tasks_in_order(self) -> list[PlanTask] | None:
        """Kahn's algorithm, ties broken by declaration order. None on a cycle.

        Unresolvable dependency references are ignored here; validate()
        reports them.
        """
        indegree = {t.id: 0 for t in self.tasks}
        dependants: dict[str, list[PlanTask]] = {t.id: [] for t in self.tasks}
        for t in self.tasks:
            for dep in {d.id: d for d in self.dependencies_of(t)}.values():
                indegree[t.id] += 1
                dependants[dep.id].append(t)

        ready = [(t.order, t.id) for t in self.tasks if indegree[t.id] == 0]
        heapq.heapify(ready)
        by_id = {t.id: t for t in self.tasks}
        ordered: list[PlanTask] = []
        while ready:
            _, task_id = heapq.heappop(ready)
            ordered.append(by_id[task_id])
            for child in dependants[task_id]:
                indegree[child.id] -= 1
                if indegree[child.id] == 0:
                    heapq.heappush(ready, (child.order, child.id))

        if len(ordered) != len(self.tasks):
            return None
        return ordered

    def validate(self) -> None:
        """Raise DependencyError for missing/self references, DependencyCycle for cycles."""
        problems = []
        for t in self.tasks:
            for ref in t.dependencies:
                dep = self.task(ref)
                if dep is None:
                    problems.append(f"Task {t.order} ({t.title}) depends on missing task '{ref}'")
                elif dep.id == t.id:
                    problems.append(f"Task {t.order} ({t.title}) depends on itself")
        if problems:
            raise DependencyError("; ".join(problems))

        if self.tasks_in_order() is None:
            ordered_ids = {t.id for t in self._acyclic_prefix()}
            raise DependencyCycle([str(t.order) for t in self.tasks if t.id not in ordered_ids])

    def _acyclic_prefix(self) -> list[PlanTask]:
        # tasks Kahn can still place when the graph has a cycle
        placed: set[str] = set()
        progress = True
        while progress:
            progress = False
            for t in self.tasks:
                if t.id not in placed and all(d.id in placed for d in self.dependencies_of(t)):
                    placed.add(t.id)
                    progress = True
        return [t for t in self.tasks if t.id in placed]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def finalize(self) -> None:
        """draft -> pending_approval, after re-validating the graph."""
        self._require(PlanStatus.DRAFT)
        if not self.tasks:
            raise PlanStateError("Cannot finalize a plan with no tasks")
        self.validate()
        self.status = PlanStatus.PENDING_APPROVAL
        self.touch()

    def approve(self) -> None:
        self._require(PlanStatus.PENDING_APPROVAL)
        self.status = PlanStatus.APPROVED
        self.approved_at = _now()
        self.touch()

    def reject(self) -> None:
        self._require(PlanStatus.DRAFT, PlanStatus.PENDING_APPROVAL)
        self.status = PlanStatus.REJECTED
        self.touch()

    def start_execution(self) -> None:
        self._require(PlanStatus.APPROVED, PlanStatus.IN_PROGRESS)
        self.status = PlanStatus.IN_PROGRESS
        self.touch()

    def complete(self) -> None:
        self._require(PlanStatus.IN_PROGRESS)
        if not self.is_complete:
            raise PlanStateError("Cannot complete a plan with unfinished tasks")
        self.status = PlanStatus.COMPLETED
        self.touch()

    def cancel(self) -> None:
        if self.status.terminal:
            raise PlanStateError(f"Plan is already {self.status.value}")
        self.status = PlanStatus.CANCELLED
        self.touch()

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        return bool(self.tasks) and all(t.finished for t in self.tasks)

    def progress_percentage(self) -> float:
        if not self.tasks:
            return 0.0
        return 100.0 * sum(1 for t in self.tasks if t.finished) / len(self.tasks)

    def count_by_status(self) -> dict[TaskStatus, int]:
        counts = {s: 0 for s in TaskStatus}
        for t in self.tasks:
            counts[t.status] += 1
        return counts

    def next_executable_task(self) -> PlanTask | None:
        ordered = self.tasks_in_order() or []
        for t in ordered:
            if t.status == TaskStatus.PENDING and all(d.finished for d in self.dependencies_of(t)):
                return t
        return None

    # ------------------------------------------------------------------
    # Serialization (JSON cache file)
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "title": self.title,
            "description": self.description,
            "context": self.context,
            "risks": list(self.risks),
            "test_strategy": self.test_strategy,
            "technical_stack": list(self.technical_stack),
            "status": self.status.value,
            "tasks": [t.to_dict() for t in self.tasks],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanDocument":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            title=data["title"],
            description=data.get("description", ""),
            context=data.get("context", ""),
            risks=list(data.get("risks", [])),
            test_strategy=data.get("test_strategy", ""),
            technical_stack=list(data.get("technical_stack", [])),
            status=PlanStatus(data.get("status", "draft")),
            tasks=[PlanTask.from_dict(t) for t in data.get("tasks", [])],
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
            approved_at=_parse_dt(data.get("approved_at")),
        )
