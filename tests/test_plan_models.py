"""Tests for PlanDocument / PlanTask: ordering, validation and lifecycle."""

import pytest

from tern.errors import DependencyCycle, DependencyError, PlanStateError
from tern.plan.models import (
    MAX_TITLE_LENGTH,
    PlanDocument,
    PlanStatus,
    PlanTask,
    TaskStatus,
    TaskType,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_plan(**kw) -> PlanDocument:
    return PlanDocument.new(kw.pop("session_id", "sess-1"), kw.pop("title", "Refactor"), "Do it", **kw)


def _approved_plan(*titles: str) -> PlanDocument:
    plan = _make_plan()
    for t in titles:
        plan.add_task(t)
    plan.finalize()
    plan.approve()
    return plan


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestTasksInOrder:
    def test_dependency_chain_is_ordered(self):
        plan = _make_plan()
        plan.add_task("C", task_id="c", dependencies=["b"])
        plan.add_task("B", task_id="b", dependencies=["a"])
        plan.add_task("A", task_id="a")
        assert [t.id for t in plan.tasks_in_order()] == ["a", "b", "c"]

    def test_ties_broken_by_declaration_order(self):
        plan = _make_plan()
        for name in ("one", "two", "three"):
            plan.add_task(name)
        assert [t.title for t in plan.tasks_in_order()] == ["one", "two", "three"]

    def test_dependencies_by_order_number(self):
        plan = _make_plan()
        plan.add_task("A")
        plan.add_task("B", dependencies=[3])
        plan.add_task("C", dependencies=[1])
        assert [t.title for t in plan.tasks_in_order()] == ["A", "C", "B"]

    def test_cycle_returns_none(self):
        plan = _make_plan()
        plan.add_task("A", task_id="a", dependencies=["b"])
        plan.add_task("B", task_id="b", dependencies=["a"])
        assert plan.tasks_in_order() is None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidate:
    def test_cycle_rejected_at_finalize(self):
        plan = _make_plan()
        plan.add_task("A", task_id="a", dependencies=["b"])
        plan.add_task("B", task_id="b", dependencies=["a"])
        with pytest.raises(DependencyCycle) as exc:
            plan.finalize()
        assert sorted(exc.value.task_ids) == ["1", "2"]
        assert plan.status == PlanStatus.DRAFT

    def test_cycle_reports_only_cycle_members(self):
        plan = _make_plan()
        plan.add_task("root", task_id="r")
        plan.add_task("A", task_id="a", dependencies=["r", "b"])
        plan.add_task("B", task_id="b", dependencies=["a"])
        with pytest.raises(DependencyCycle) as exc:
            plan.validate()
        assert sorted(exc.value.task_ids) == ["2", "3"]

    def test_missing_dependency_keeps_draft(self):
        plan = _make_plan()
        plan.add_task("A", dependencies=["nope"])
        with pytest.raises(DependencyError, match="missing task 'nope'"):
            plan.finalize()
        assert plan.status == PlanStatus.DRAFT

    def test_self_dependency(self):
        plan = _make_plan()
        plan.add_task("A", task_id="a", dependencies=["a"])
        with pytest.raises(DependencyError, match="depends on itself"):
            plan.validate()

    def test_cycle_is_a_dependency_error(self):
        assert issubclass(DependencyCycle, DependencyError)

    def test_finalize_requires_tasks(self):
        with pytest.raises(PlanStateError):
            _make_plan().finalize()


class TestTextValidation:
    def test_empty_title(self):
        with pytest.raises(ValueError, match="title"):
            PlanDocument.new("s", "   ", "desc")

    def test_title_too_long(self):
        with pytest.raises(ValueError, match="exceeds"):
            PlanDocument.new("s", "x" * (MAX_TITLE_LENGTH + 1), "desc")

    def test_task_title_validated(self):
        plan = _make_plan()
        with pytest.raises(ValueError):
            plan.add_task("")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_happy_path(self):
        plan = _approved_plan("A")
        assert plan.status == PlanStatus.APPROVED
        assert plan.approved_at is not None
        plan.start_execution()
        task = plan.tasks[0]
        task.start()
        task.complete("done")
        plan.complete()
        assert plan.status == PlanStatus.COMPLETED
        assert task.completed_at is not None

    def test_tasks_only_added_in_draft(self):
        plan = _approved_plan("A")
        with pytest.raises(PlanStateError):
            plan.add_task("late")

    def test_update_only_in_draft(self):
        plan = _approved_plan("A")
        with pytest.raises(PlanStateError):
            plan.update(title="new")

    def test_approve_requires_pending(self):
        with pytest.raises(PlanStateError):
            _make_plan().approve()

    def test_complete_requires_finished_tasks(self):
        plan = _approved_plan("A")
        plan.start_execution()
        with pytest.raises(PlanStateError):
            plan.complete()

    def test_cancel_terminal_plan(self):
        plan = _make_plan()
        plan.reject()
        with pytest.raises(PlanStateError):
            plan.cancel()

    def test_is_empty_draft(self):
        plan = _make_plan()
        assert plan.is_empty_draft
        plan.add_task("A")
        assert not plan.is_empty_draft


class TestTaskTransitions:
    def test_complete_requires_in_progress(self):
        task = PlanTask(id="t", order=1, title="T")
        with pytest.raises(PlanStateError):
            task.complete()

    def test_skip_terminal_task(self):
        task = PlanTask(id="t", order=1, title="T")
        task.fail("boom")
        with pytest.raises(PlanStateError):
            task.skip()

    def test_complexity_clamped(self):
        assert PlanTask(id="a", order=1, title="x", complexity=9).complexity == 5
        assert PlanTask(id="b", order=1, title="x", complexity=0).complexity == 1

    def test_complexity_stars(self):
        assert PlanTask(id="a", order=1, title="x", complexity=2).complexity_stars == "★★☆☆☆"

    def test_task_type_parse_unknown(self):
        assert TaskType.parse("Refactor") == TaskType.REFACTOR
        assert TaskType.parse("weird") == TaskType.OTHER
        assert TaskType.parse(None) == TaskType.OTHER


# ---------------------------------------------------------------------------
# Progress + serialization
# ---------------------------------------------------------------------------


class TestProgress:
    def test_next_executable_respects_dependencies(self):
        plan = _make_plan()
        plan.add_task("A")
        plan.add_task("B", dependencies=[1])
        assert plan.next_executable_task().title == "A"
        plan.tasks[0].skip()
        assert plan.next_executable_task().title == "B"

    def test_progress_and_counts(self):
        plan = _make_plan()
        plan.add_task("A")
        plan.add_task("B")
        plan.tasks[0].skip()
        assert plan.progress_percentage() == 50.0
        counts = plan.count_by_status()
        assert counts[TaskStatus.SKIPPED] == 1
        assert counts[TaskStatus.PENDING] == 1
        assert not plan.is_complete

    def test_empty_plan_progress(self):
        assert _make_plan().progress_percentage() == 0.0

    def test_dict_round_trip_preserves_state(self):
        plan = _approved_plan("A", "B")
        plan.tasks[1].dependencies = ["1"]
        restored = PlanDocument.from_dict(plan.to_dict())
        assert restored.to_dict() == plan.to_dict()
        assert restored.approved_at == plan.approved_at
