"""The `plan` tool: lets the model build and track a PlanDocument.

Operations mutate only the in-memory plan held by the session's PlanStore.
Saving it is the agent loop's job, which compares the plan before and
after each tool batch.
"""

from __future__ import annotations

import logging
from typing import Any

from tern.errors import PlanError
from tern.plan.models import PlanDocument, PlanStatus, TaskStatus, TaskType
from tern.plan.store import PlanStore
from tern.tools.registry import (
    Capability,
    Tool,
    ToolError,
    ToolErrorKind,
    ToolExecutionContext,
    ToolOutcome,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "add_task", "update_plan", "finalize", "status", "next_task", "skip_task", "summary")

_PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "operation": {
            "type": "string",
            "enum": list(OPERATIONS),
            "description": "What to do with the session's plan.",
        },
        "title": {"type": "string", "description": "Plan or task title (max 200 chars)."},
        "description": {"type": "string", "description": "Plan or task description (max 5000 chars)."},
        "context": {"type": "string", "description": "Background the plan relies on."},
        "risks": {"type": "array", "items": {"type": "string"}},
        "test_strategy": {"type": "string"},
        "technical_stack": {"type": "array", "items": {"type": "string"}},
        "task_type": {
            "type": "string",
            "enum": [t.value for t in TaskType],
            "description": "Kind of work (add_task).",
        },
        "dependencies": {
            "type": "array",
            "items": {"type": "integer"},
            "description": "Order numbers of tasks this one depends on (add_task).",
        },
        "complexity": {"type": "integer", "minimum": 1, "maximum": 5},
        "acceptance_criteria": {"type": "array", "items": {"type": "string"}},
        "task": {"type": "integer", "description": "Task order number (skip_task)."},
        "reason": {"type": "string", "description": "Why the task is skipped (skip_task)."},
    },
    "required": ["operation"],
}

_PLAN_DESCRIPTION = (
    "Create and manage a step-by-step plan before making changes. Start with "
    "'create', add tasks in order with 'add_task' (dependencies refer to earlier "
    "task numbers), then call 'finalize' to submit the plan for approval. "
    "Use 'status', 'next_task' and 'summary' to check progress."
)


def _invalid(message: str) -> ToolError:
    return ToolError(ToolErrorKind.INVALID_INPUT, message)


def format_status(plan: PlanDocument) -> str:
    counts = plan.count_by_status()
    lines = [
        f"Plan: {plan.title} [{plan.status.value}]",
        f"Progress: {plan.progress_percentage():.0f}% "
        f"({counts[TaskStatus.COMPLETED]} completed, {counts[TaskStatus.SKIPPED]} skipped, "
        f"{counts[TaskStatus.PENDING]} pending, {counts[TaskStatus.FAILED]} failed, "
        f"{counts[TaskStatus.BLOCKED]} blocked)",
    ]
    for t in plan.tasks:
        deps = ", ".join(t.dependencies)
        lines.append(
            f"  {t.order}. [{t.status.value}] {t.title} ({t.task_type.value}, {t.complexity_stars})"
            + (f" depends on {deps}" if deps else "")
        )
    return "\n".join(lines)


def create_plan_tool(store: PlanStore):
    """Build the plan tool handler bound to a store."""

    def _current(context: ToolExecutionContext) -> PlanDocument:
        plan = store.get(context.session_id)
        if plan is None:
            raise _invalid("No plan exists for this session; use operation 'create' first")
        return plan

    async def plan_tool(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
        operation = arguments.get("operation")
        if operation not in OPERATIONS:
            raise _invalid(f"Unknown plan operation '{operation}'. Valid: {', '.join(OPERATIONS)}")

        try:
            if operation == "create":
                plan = store.create(
                    context.session_id,
                    arguments.get("title", ""),
                    arguments.get("description", ""),
                    context=arguments.get("context", ""),
                    risks=arguments.get("risks"),
                    test_strategy=arguments.get("test_strategy", ""),
                    technical_stack=arguments.get("technical_stack"),
                )
                return ToolOutcome(
                    f"Created plan '{plan.title}' (draft). Add tasks with 'add_task', then 'finalize'.",
                    metadata={"plan_id": plan.id},
                )

            plan = _current(context)

            if operation == "add_task":
                task = plan.add_task(
                    arguments.get("title", ""),
                    arguments.get("description", ""),
                    task_type=arguments.get("task_type", "other"),
                    dependencies=arguments.get("dependencies"),
                    complexity=arguments.get("complexity", 3),
                    acceptance_criteria=arguments.get("acceptance_criteria"),
                )
                return ToolOutcome(
                    f"Added task {task.order}: {task.title} ({task.task_type.value}, {task.complexity_stars})",
                    metadata={"task_id": task.id, "order": task.order},
                )

            if operation == "update_plan":
                plan.update(
                    title=arguments.get("title"),
                    description=arguments.get("description"),
                    context=arguments.get("context"),
                    risks=arguments.get("risks"),
                    test_strategy=arguments.get("test_strategy"),
                    technical_stack=arguments.get("technical_stack"),
                )
                return ToolOutcome(f"Updated plan '{plan.title}'")

            if operation == "finalize":
                plan.finalize()
                logger.info("Plan %s finalized with %d task(s)", plan.id[:8], len(plan.tasks))
                return ToolOutcome(
                    f"Plan '{plan.title}' finalized with {len(plan.tasks)} task(s) and is awaiting "
                    "user approval. Stop here and wait for the user to approve it."
                )

            if operation == "status":
                return ToolOutcome(format_status(plan))

            if operation == "next_task":
                task = plan.next_executable_task()
                if task is None:
                    if plan.is_complete:
                        return ToolOutcome("All tasks are finished.")
                    return ToolOutcome("No task is ready; remaining tasks are waiting on unfinished dependencies.")
                text = f"Next task {task.order}: {task.title}"
                if task.description:
                    text += f"\n{task.description}"
                for criterion in task.acceptance_criteria:
                    text += f"\n- {criterion}"
                return ToolOutcome(text, metadata={"task_id": task.id})

            if operation == "skip_task":
                if plan.status not in (PlanStatus.APPROVED, PlanStatus.IN_PROGRESS):
                    raise _invalid(f"Tasks can only be skipped once the plan is approved (it is {plan.status.value})")
                ref = arguments.get("task")
                task = plan.task(ref) if ref is not None else None
                if task is None:
                    raise _invalid(f"No task {ref} in plan")
                task.skip(arguments.get("reason"))
                plan.touch()
                return ToolOutcome(f"Skipped task {task.order}: {task.title}")

            # summary
            counts = plan.count_by_status()
            return ToolOutcome(
                f"{plan.title}: {plan.status.value}, {len(plan.tasks)} task(s), "
                f"{plan.progress_percentage():.0f}% done, {counts[TaskStatus.FAILED]} failed"
            )
        except (PlanError, ValueError) as e:
            raise _invalid(str(e)) from e

    return plan_tool


def register_plan_tool(registry: ToolRegistry, store: PlanStore) -> None:
    registry.register(
        Tool(
            name="plan",
            description=_PLAN_DESCRIPTION,
            input_schema=_PLAN_SCHEMA,
            handler=create_plan_tool(store),
            capabilities=frozenset({Capability.PLAN}),
            requires_approval=False,
        )
    )
