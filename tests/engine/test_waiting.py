"""Tests for stepflow.engine.engine — user tasks, timers, deadlines and external control."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from stepflow.builder import StepBuilder, WorkflowBuilder
from stepflow.core.errors import (
    ErrorCategory,
    InvalidTransitionError,
    StepflowError,
    TaskNotFoundError,
    ValidationError,
)
from stepflow.core.timestamps import utc_now
from stepflow.engine import (
    LAST_ERROR_KEY,
    EventKind,
    RecordStatus,
    TaskStatus,
    ThreadTimeoutScheduler,
    WorkflowEngine,
)
from stepflow.model import InstanceStatus, StepKind


def _task(name: str, executor: str = "noop") -> StepBuilder:
    return StepBuilder(name, StepKind.TASK).executor(executor)


def _start(engine, definition, variables=None):
    return engine.start_workflow(engine.deploy(definition).id, variables)


def _statuses(engine, instance_id):
    return [(r.step_name, r.status) for r in engine.get_history(instance_id)]


# ── User tasks ──────────────────────────────────────────────────────


class TestUserTasks:
    def test_instance_waits_for_task(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition, {"days": 3})

        assert instance.status is InstanceStatus.WAITING
        review = approval_definition.find_step_by_name("manager_review")
        assert instance.current_step_id == review.id

        tasks = engine.get_pending_tasks(assignee="manager")
        assert len(tasks) == 1
        assert tasks[0].step_id == review.id
        assert tasks[0].instance_id == instance.id
        assert tasks[0].due_at is not None
        assert engine.get_pending_tasks(assignee="director") == []

        events = scheduler.pending(instance.id)
        assert [e.kind for e in events] == [EventKind.TIMEOUT]
        assert events[0].due_at == tasks[0].due_at

    def test_nothing_moves_before_deadline(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition)
        assert scheduler.poll(utc_now()) == []
        assert engine.get_instance(instance.id).status is InstanceStatus.WAITING

    def test_completion_continues_flow(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition, {"days": 3})
        task = engine.get_pending_tasks(assignee="manager")[0]

        finished = engine.complete_user_task(task.id, {"approved": True}, completed_by="manager")

        assert finished.status is InstanceStatus.COMPLETED
        assert finished.context == {"days": 3, "approved": True, "status_code": 200}
        assert scheduler.pending(instance.id) == []

        done = engine.get_task(task.id)
        assert done.status is TaskStatus.COMPLETED
        assert done.form_data == {"approved": True}
        assert done.completed_by == "manager"
        assert engine.get_pending_tasks() == []

        assert _statuses(engine, instance.id) == [
            ("start", RecordStatus.SUCCESS),
            ("manager_review", RecordStatus.WAITING),
            ("manager_review", RecordStatus.SUCCESS),
            ("notify", RecordStatus.SUCCESS),
            ("end", RecordStatus.SUCCESS),
        ]

    def test_task_completes_only_once(self, engine, approval_definition):
        _start(engine, approval_definition)
        task = engine.get_pending_tasks()[0]
        engine.complete_user_task(task.id, {"approved": True})

        with pytest.raises(StepflowError, match="COMPLETED") as exc:
            engine.complete_user_task(task.id, {"approved": False})
        assert exc.value.category is ErrorCategory.STATE

    def test_complete_task_by_step(self, engine, approval_definition):
        instance = _start(engine, approval_definition)
        task = engine.get_pending_tasks()[0]

        engine.complete_task(instance.id, instance.current_step_id, {"approved": False}, completed_by="hr")

        assert engine.get_task(task.id).status is TaskStatus.COMPLETED
        assert engine.get_instance(instance.id).context["approved"] is False

    def test_complete_wrong_step(self, engine, approval_definition):
        instance = _start(engine, approval_definition)
        notify = approval_definition.find_step_by_name("notify")
        with pytest.raises(ValidationError, match="waiting on step"):
            engine.complete_task(instance.id, notify.id)

    def test_complete_when_not_waiting(self, engine, linear_definition):
        instance = _start(engine, linear_definition)
        with pytest.raises(InvalidTransitionError):
            engine.complete_task(instance.id, "step_1")

    def test_unknown_task(self, engine):
        with pytest.raises(TaskNotFoundError):
            engine.complete_user_task("no-such-task")
        with pytest.raises(TaskNotFoundError):
            engine.get_task("no-such-task")

    def test_pending_tasks_oldest_first(self, engine, approval_definition):
        first = _start(engine, approval_definition)
        second = _start(engine, approval_definition)
        assert [t.instance_id for t in engine.get_pending_tasks()] == [first.id, second.id]

    def test_task_assignment_details(self, engine):
        definition = (
            WorkflowBuilder("claims")
            .add_step(
                StepBuilder("assess", StepKind.USER_TASK)
                .executor("user_task")
                .candidate_groups("adjusters", "seniors")
                .high_priority()
                .form_key("claims/assess")
                .timeout(60)
            )
            .build()
        )
        _start(engine, definition)
        task = engine.get_pending_tasks()[0]

        assert task.assignee is None
        assert task.candidate_groups == ["adjusters", "seniors"]
        assert task.form_key == "claims/assess"
        assert task.can_be_handled_by("ann", ["adjusters"])
        assert not task.can_be_handled_by("bob", ["sales"])
        assert not task.is_overdue(utc_now())
        assert task.is_overdue(utc_now() + timedelta(minutes=2))


# ── Deadlines ───────────────────────────────────────────────────────


class TestDeadlines:
    def test_expired_task_fails_instance(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition)
        task = engine.get_pending_tasks()[0]

        fired = scheduler.poll(utc_now() + timedelta(days=2))

        assert len(fired) == 1
        failed = engine.get_instance(instance.id)
        assert failed.status is InstanceStatus.FAILED
        assert failed.error == f"Step {task.step_id} timed out after 86400s"
        assert engine.get_task(task.id).status is TaskStatus.CANCELLED
        assert _statuses(engine, instance.id)[-1] == ("manager_review", RecordStatus.TIMEOUT)

    def test_expired_task_routes_to_error_step(self, engine, scheduler):
        definition = (
            WorkflowBuilder("leave.escalation")
            .add_user_task("review", assignee="manager")
            .add_step(_task("approve"))
            .add_step(_task("escalate"))
            .on_error("review", "escalate")
            .build()
        )
        instance = _start(engine, definition)
        scheduler.poll(utc_now() + timedelta(days=2))

        done = engine.get_instance(instance.id)
        assert done.status is InstanceStatus.COMPLETED
        assert "timed out" in done.context[LAST_ERROR_KEY]
        names = [name for name, _ in _statuses(engine, instance.id)]
        assert "approve" not in names
        assert names[-2:] == ["escalate", "end"]

    def test_expired_optional_task_is_passed(self, engine, scheduler):
        definition = (
            WorkflowBuilder("survey")
            .add_step(StepBuilder("feedback", StepKind.USER_TASK).executor("user_task").optional().timeout(5))
            .add_step(_task("archive"))
            .build()
        )
        instance = _start(engine, definition)
        scheduler.poll(utc_now() + timedelta(seconds=10))

        assert engine.get_instance(instance.id).status is InstanceStatus.COMPLETED
        assert ("archive", RecordStatus.SUCCESS) in _statuses(engine, instance.id)

    def test_stale_timeout_is_ignored(self, engine, approval_definition):
        instance = _start(engine, approval_definition)
        notify = approval_definition.find_step_by_name("notify")
        assert engine.handle_timeout(instance.id, notify.id) is False
        assert engine.get_instance(instance.id).status is InstanceStatus.WAITING


# ── Timers ──────────────────────────────────────────────────────────


def _timer_definition(seconds: float):
    return WorkflowBuilder("cooling").add_timer("cool_off", seconds).add_step(_task("resume_order")).build()


class TestTimers:
    def test_waits_until_due(self, engine, scheduler):
        instance = _start(engine, _timer_definition(30))

        assert instance.status is InstanceStatus.WAITING
        assert [e.kind for e in scheduler.pending(instance.id)] == [EventKind.TIMER]
        assert engine.get_pending_tasks() == []

        scheduler.poll(utc_now() + timedelta(seconds=10))
        assert engine.get_instance(instance.id).status is InstanceStatus.WAITING

        scheduler.poll(utc_now() + timedelta(seconds=60))
        assert engine.get_instance(instance.id).status is InstanceStatus.COMPLETED
        cool_off = [s for n, s in _statuses(engine, instance.id) if n == "cool_off"]
        assert cool_off == [RecordStatus.WAITING, RecordStatus.SUCCESS]

    def test_zero_duration_completes_immediately(self, engine, scheduler):
        instance = _start(engine, _timer_definition(0))
        assert instance.status is InstanceStatus.COMPLETED
        assert scheduler.pending() == []

    def test_handle_timer_directly(self, engine):
        definition = _timer_definition(3600)
        instance = _start(engine, definition)
        timer = definition.find_step_by_name("cool_off")

        assert engine.handle_timer(instance.id, timer.id) is True
        assert engine.get_instance(instance.id).status is InstanceStatus.COMPLETED
        assert engine.handle_timer(instance.id, timer.id) is False


# ── Suspend / resume ────────────────────────────────────────────────


class TestSuspendResume:
    def test_suspend_waiting_instance(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition)

        suspended = engine.suspend(instance.id)

        assert suspended.status is InstanceStatus.SUSPENDED
        with pytest.raises(InvalidTransitionError):
            engine.complete_task(instance.id, instance.current_step_id, {"approved": True})

        resumed = engine.resume(instance.id)
        assert resumed.status is InstanceStatus.WAITING
        assert len(scheduler.pending(instance.id)) == 1

        task = engine.get_pending_tasks()[0]
        assert engine.complete_user_task(task.id, {"approved": True}).status is InstanceStatus.COMPLETED

    def test_deadline_while_suspended(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition)
        engine.suspend(instance.id)

        scheduler.poll(utc_now() + timedelta(days=2))
        assert engine.get_instance(instance.id).status is InstanceStatus.SUSPENDED

        engine.resume(instance.id)
        scheduler.poll(utc_now() + timedelta(days=2))
        assert engine.get_instance(instance.id).status is InstanceStatus.FAILED

    def test_suspend_during_step_discards_result(self, engine):
        calls = []

        def pausing(step, ctx):
            calls.append(ctx.step_id)
            if len(calls) == 1:
                engine.suspend(ctx.instance_id)
            return {"done": len(calls)}

        engine.register_executor("pausing", pausing)
        definition = WorkflowBuilder("wf").add_step(_task("work", "pausing")).add_step(_task("after")).build()
        instance = _start(engine, definition)

        assert instance.status is InstanceStatus.SUSPENDED
        assert "done" not in instance.context
        assert _statuses(engine, instance.id)[-1] == ("work", RecordStatus.DISCARDED)

        resumed = engine.resume(instance.id)
        assert resumed.status is InstanceStatus.COMPLETED
        assert resumed.context["done"] == 2
        assert len(calls) == 2

    def test_resume_requires_suspended(self, engine, approval_definition):
        instance = _start(engine, approval_definition)
        with pytest.raises(InvalidTransitionError, match="only SUSPENDED"):
            engine.resume(instance.id)

    def test_cannot_suspend_finished_instance(self, engine, linear_definition):
        instance = _start(engine, linear_definition)
        with pytest.raises(InvalidTransitionError):
            engine.suspend(instance.id)


# ── Cancel / terminate ──────────────────────────────────────────────


class TestCancelTerminate:
    def test_cancel_waiting_instance(self, engine, scheduler, approval_definition):
        instance = _start(engine, approval_definition)
        task = engine.get_pending_tasks()[0]

        cancelled = engine.cancel(instance.id, "withdrawn by employee")

        assert cancelled.status is InstanceStatus.CANCELLED
        assert cancelled.error == "withdrawn by employee"
        assert cancelled.completed_at is not None
        assert engine.get_task(task.id).status is TaskStatus.CANCELLED
        assert scheduler.pending(instance.id) == []
        with pytest.raises(InvalidTransitionError):
            engine.cancel(instance.id)

    def test_cancel_during_step(self, engine):
        seen = {}

        def aborting(step, ctx):
            engine.cancel(ctx.instance_id, "operator abort")
            seen["cancelled"] = ctx.is_cancelled
            return {"late": True}

        engine.register_executor("aborting", aborting)
        definition = WorkflowBuilder("wf").add_step(_task("work", "aborting")).add_step(_task("after")).build()
        instance = _start(engine, definition)

        assert instance.status is InstanceStatus.CANCELLED
        assert instance.error == "operator abort"
        assert seen["cancelled"] is True
        assert "late" not in instance.context
        names = [name for name, _ in _statuses(engine, instance.id)]
        assert "after" not in names

    def test_terminate(self, engine, approval_definition):
        instance = _start(engine, approval_definition)

        terminated = engine.terminate(instance.id, "policy violation")

        assert terminated.status is InstanceStatus.TERMINATED
        assert terminated.error == "policy violation"
        assert engine.statistics().terminated == 1
        assert engine.get_pending_tasks() == []

    def test_terminate_suspended(self, engine, approval_definition):
        instance = _start(engine, approval_definition)
        engine.suspend(instance.id)
        assert engine.terminate(instance.id).status is InstanceStatus.TERMINATED


# ── Context updates ─────────────────────────────────────────────────


class TestUpdateContext:
    def test_update_waiting_instance(self, engine, approval_definition):
        instance = _start(engine, approval_definition, {"days": 3})

        updated = engine.update_context(instance.id, {"days": 4, "note": "extended"})
        assert updated.context == {"days": 4, "note": "extended"}

        task = engine.get_pending_tasks()[0]
        finished = engine.complete_user_task(task.id, {"approved": True})
        assert finished.context["note"] == "extended"

    def test_terminal_instance_is_read_only(self, engine, linear_definition):
        instance = _start(engine, linear_definition)
        with pytest.raises(StepflowError, match="read-only") as exc:
            engine.update_context(instance.id, {"x": 1})
        assert exc.value.category is ErrorCategory.STATE

    def test_returned_instance_is_a_snapshot(self, engine, approval_definition):
        instance = _start(engine, approval_definition, {"days": 3})
        instance.context["days"] = 99
        assert engine.get_instance(instance.id).context["days"] == 3


# ── Scheduled wake-ups ──────────────────────────────────────────────


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestScheduledWakeups:
    def test_woken_instance_runs_off_the_scheduler_thread(self, settings, executors):
        entered = threading.Event()
        release = threading.Event()

        def slow(step, ctx):
            entered.set()
            release.wait(5)

        executors.register("slow", slow)
        cooling = (
            WorkflowBuilder("cooling.slow")
            .add_timer("cool_off", 0.05)
            .add_step(_task("resume_order", "slow"))
            .build()
        )
        review = (
            WorkflowBuilder("review.short")
            .add_step(StepBuilder("review", StepKind.USER_TASK).executor("user_task").timeout(1))
            .build()
        )
        scheduler = ThreadTimeoutScheduler(poll_interval=0.02)

        with WorkflowEngine(executors=executors, settings=settings, scheduler=scheduler) as eng:
            try:
                woken = _start(eng, cooling)
                waiting = _start(eng, review)
                assert entered.wait(3)

                # the other instance's deadline fires while the first is mid-step
                assert _wait_for(lambda: eng.get_instance(waiting.id).status is InstanceStatus.FAILED)
                assert eng.get_instance(woken.id).status is InstanceStatus.RUNNING
            finally:
                release.set()
            assert _wait_for(lambda: eng.get_instance(woken.id).status is InstanceStatus.COMPLETED)
