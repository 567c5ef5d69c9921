"""Markdown export of approved plans."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from tern.plan.models import PlanDocument, PlanStatus, TaskStatus

logger = logging.getLogger(__name__)

_MARKER = re.compile(r"<!-- plan-id: (\S+) approved: (\S+) tasks: (\d+) -->")

_STATUS_ICONS = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.IN_PROGRESS: "[~]",
    TaskStatus.COMPLETED: "[x]",
    TaskStatus.FAILED: "[!]",
    TaskStatus.BLOCKED: "[-]",
    TaskStatus.SKIPPED: "[>]",
}


def _marker(plan: PlanDocument) -> str:
    approved = plan.approved_at.isoformat() if plan.approved_at else "-"
    return f"<!-- plan-id: {plan.id} approved: {approved} tasks: {len(plan.tasks)} -->"


def render_markdown(plan: PlanDocument) -> str:
    lines = [
        _marker(plan),
        f"# {plan.title}",
        "",
        f"**Status:** {plan.status.value}  ",
        f"**Progress:** {plan.progress_percentage():.0f}%",
        "",
        "## Description",
        "",
        plan.description,
        "",
    ]
    if plan.context:
        lines += ["## Context", "", plan.context, ""]
    if plan.technical_stack:
        lines += ["## Technical stack", ""] + [f"- {s}" for s in plan.technical_stack] + [""]
    if plan.risks:
        lines += ["## Risks", ""] + [f"- {r}" for r in plan.risks] + [""]
    if plan.test_strategy:
        lines += ["## Test strategy", "", plan.test_strategy, ""]

    lines += ["## Tasks", ""]
    for task in plan.tasks_in_order() or plan.tasks:
        deps = ", ".join(str(d.order) for d in plan.dependencies_of(task))
        lines.append(
            f"{task.order}. {_STATUS_ICONS[task.status]} **{task.title}** "
            f"({task.task_type.value}, {task.complexity_stars})"
        )
        if task.description:
            lines.append(f"   {task.description}")
        if deps:
            lines.append(f"   Depends on: {deps}")
        for criterion in task.acceptance_criteria:
            lines.append(f"   - [ ] {criterion}")
        if task.notes:
            lines.append(f"   _Notes: {task.notes}_")
    lines.append("")
    return "\n".join(lines)


class PlanExporter:
    """Writes PLAN.md once per approval event.

    The file header records which plan and approval produced it. A file
    owned by another non-empty plan is left alone and the export goes to
    PLAN-<id>.md instead.
    """

    filename = "PLAN.md"

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def export(self, plan: PlanDocument) -> Path | None:
        if plan.status not in (PlanStatus.APPROVED, PlanStatus.IN_PROGRESS, PlanStatus.COMPLETED):
            logger.debug("Not exporting plan %s in state %s", plan.id[:8], plan.status.value)
            return None

        target = self.directory / self.filename
        existing = self._read_marker(target)
        if existing is not None:
            plan_id, approved, task_count = existing
            if plan_id == plan.id:
                if plan.approved_at and approved == plan.approved_at.isoformat():
                    logger.debug("Plan %s already exported for this approval", plan.id[:8])
                    return None
            elif task_count > 0:
                target = self.directory / f"PLAN-{plan.id[:8]}.md"
                logger.warning(
                    "%s belongs to plan %s; exporting to %s instead",
                    self.filename,
                    plan_id[:8],
                    target.name,
                )
        elif target.exists() and target.read_text(encoding="utf-8").strip():
            target = self.directory / f"PLAN-{plan.id[:8]}.md"
            logger.warning("%s exists and is not a plan export; using %s", self.filename, target.name)

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_markdown(plan), encoding="utf-8")
        logger.info("Exported plan %s to %s", plan.id[:8], target)
        return target

    @staticmethod
    def _read_marker(path: Path) -> tuple[str, str, int] | None:
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as f:
            first = f.readline()
        match = _MARKER.search(first)
        if not match:
            return None
        return match.group(1), match.group(2), int(match.group(3))
