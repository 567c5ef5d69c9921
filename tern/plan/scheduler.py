"""Drive an approved plan through the agent loop, one task per turn.

Tasks run in dependency order. A task is only marked completed after its
turn succeeded; a failed turn marks the task failed, blocks everything
downstream of it and halts the run. The model may skip the running task
through the plan tool; that status is kept as is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tern.errors import DependencyCycle, PlanStateError
from tern.events import PLAN_STATUS_CHANGED, PLAN_TASK_STATUS_CHANGED, Event, EventBus
from tern.plan.models import PlanDocument, PlanStatus, PlanTask, TaskStatus
from tern.plan.store import PlanStore

if TYPE_CHECKING:
    from tern.agent.loop import AgentLoop

logger = logging.getLogger(__name__)


@dataclass
class PlanRunReport:
    plan_id: str
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    failed_task: str | None = None
    failure_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.failed_task is None and not self.blocked

    def describe(self) -> str:
        if self.failed_task:
            return f"Stopped at task '{self.failed_task}': {self.failure_reason}"
        if self.blocked:
            return f"Blocked tasks: {', '.join(self.blocked)}"
        return f"Completed {len(self.completed)} task(s)"


def task_instruction(plan: PlanDocument, task: PlanTask) -> str:
    """The user message that asks the loop to carry out one task."""
    lines = [
        f"Execute task {task.order} of the approved plan '{plan.title}': {task.title}",
    ]
    if task.description:
        lines += ["", task.description]
    if task.acceptance_criteria:
        lines += ["", "Acceptance criteria:"] + [f"- {c}" for c in task.acceptance_criteria]
    done = [t for t in plan.tasks if t.status == TaskStatus.COMPLETED]
    if done:
        lines += ["", "Already completed: " + "; ".join(f"{t.order}. {t.title}" for t in done)]
    lines += ["", "Work only on this task and finish with a short summary of what you did."]
    return "\n".join(lines)


class PlanScheduler:
    def __init__(
        self,
        loop: AgentLoop,
        store: PlanStore,
        events: EventBus | None = None,
    ) -> None:
        self.loop = loop
        self.store = store
        self.events = events

    async def run(self, plan: PlanDocument) -> PlanRunReport:
        if plan.status not in (PlanStatus.APPROVED, PlanStatus.IN_PROGRESS):
            raise PlanStateError(f"Plan must be approved before execution (it is {plan.status.value})")
        ordered = plan.tasks_in_order()
        if ordered is None:
            plan.validate()
            raise DependencyCycle([str(t.order) for t in plan.tasks])

        previous = plan.status
        plan.start_execution()
        await self._save(plan)
        if previous != plan.status:
            await self._emit(PLAN_STATUS_CHANGED, plan, {"from": previous.value, "to": plan.status.value})

        report = PlanRunReport(plan_id=plan.id)
        for task in ordered:
            if task.status == TaskStatus.COMPLETED:
                report.completed.append(task.title)
                continue
            if task.status == TaskStatus.SKIPPED:
                report.skipped.append(task.title)
                continue
            if task.terminal:
                # failed or blocked on an earlier run
                report.blocked.append(task.title)
                continue

            unmet = [d for d in plan.dependencies_of(task) if not d.finished]
            if unmet:
                reason = "Dependency not satisfied: " + ", ".join(f"{d.order}. {d.title}" for d in unmet)
                await self._transition(plan, task, task.block, reason)
                report.blocked.append(task.title)
                continue

            await self._transition(plan, task, task.start)
            logger.info("Executing task %d/%d: %s", task.order, len(plan.tasks), task.title)
            outcome = await self.loop.run_turn(task_instruction(plan, task))

            if outcome.succeeded and task.status == TaskStatus.SKIPPED:
                logger.info("Task %d was skipped during its turn: %s", task.order, task.notes or "")
                await self._emit(
                    PLAN_TASK_STATUS_CHANGED,
                    plan,
                    {"task_id": task.id, "order": task.order, "from": "in_progress", "to": task.status.value},
                )
                report.skipped.append(task.title)
                continue

            if outcome.succeeded:
                await self._transition(plan, task, task.complete, outcome.text[:500] or None)
                report.completed.append(task.title)
                continue

            reason = f"{outcome.error_category}: {outcome.text}"
            await self._transition(plan, task, task.fail, reason)
            report.failed_task = task.title
            report.failure_reason = reason
            logger.warning("Task %d failed, halting plan %s: %s", task.order, plan.id[:8], reason)
            await self._block_dependants(plan, task, report)
            return report

        if plan.is_complete:
            plan.complete()
            await self._save(plan)
            await self._emit(
                PLAN_STATUS_CHANGED, plan, {"from": PlanStatus.IN_PROGRESS.value, "to": plan.status.value}
            )
            logger.info("Plan %s completed", plan.id[:8])
        return report

    async def _block_dependants(self, plan: PlanDocument, failed: PlanTask, report: PlanRunReport) -> None:
        blocked_ids = {failed.id}
        for task in plan.tasks_in_order() or []:
            if task.status != TaskStatus.PENDING:
                continue
            if any(d.id in blocked_ids for d in plan.dependencies_of(task)):
                blocked_ids.add(task.id)
                await self._transition(plan, task, task.block, f"Blocked by failed task {failed.order}")
                report.blocked.append(task.title)

    async def _transition(self, plan: PlanDocument, task: PlanTask, action, *args: Any) -> None:
        before = task.status
        action(*args)
        plan.touch()
        await self._save(plan)
        await self._emit(
            PLAN_TASK_STATUS_CHANGED,
            plan,
            {"task_id": task.id, "order": task.order, "from": before.value, "to": task.status.value},
        )

    async def _save(self, plan: PlanDocument) -> None:
        await self.store.save(plan)

    async def _emit(self, event_type: str, plan: PlanDocument, data: dict[str, Any]) -> None:
        if self.events:
            await self.events.emit(
                Event(type=event_type, session_id=plan.session_id, data={"plan_id": plan.id, **data})
            )
