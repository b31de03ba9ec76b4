"""
Shared pytest fixtures for stepflow tests.

This module provides:
- Engine settings tuned for tests (no backoff delay, fast polling)
- An engine wired to a manually-polled scheduler and an inline signal pool
- Sample definitions (linear, user-task approval, condition routing)
- Join policy registry cleanup for test isolation

Usage:
    Fixtures are auto-discovered by pytest; request them as arguments.

    def test_something(engine, linear_definition):
        instance = engine.start_workflow(engine.deploy(linear_definition).id)
"""

import sys
from pathlib import Path
from concurrent.futures import Executor, Future
from typing import Any, Generator

import pytest

# Ensure stepflow package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stepflow.builder import ConditionalStepBuilder, StepBuilder, WorkflowBuilder
from stepflow.core.settings import EngineSettings, clear_settings_cache
from stepflow.engine import ThreadTimeoutScheduler, WorkflowEngine
from stepflow.execution import ExecutorRegistry
from stepflow.model import StepKind, WorkflowDefinition
from stepflow.parallel.join import join_policies


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _clean_settings() -> Generator[None, None, None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def _clean_join_policies() -> Generator[None, None, None]:
    """Drop custom join policies registered by a test."""
    registry = join_policies()
    before = set(registry.names())
    yield
    for name in set(registry.names()) - before:
        registry.unregister(name)


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        base_retry_delay=0.0,
        max_retry_delay=0.0,
        timeout_poll_interval=60.0,
        max_workers=4,
    )


@pytest.fixture
def executors() -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register("noop", lambda step, ctx: None)
    registry.register("service_call", lambda step, ctx: {"status_code": 200})
    registry.register("email", lambda step, ctx: {"sent_to": step.config("email_to")})
    registry.register("script", lambda step, ctx: {"script_ran": step.id})
    return registry


@pytest.fixture
def scheduler() -> ThreadTimeoutScheduler:
    """Polls only once a minute; tests call ``poll(now=...)`` themselves."""
    return ThreadTimeoutScheduler(poll_interval=60.0)


class InlinePool(Executor):
    """Runs submitted work on the calling thread.

    With it, ``scheduler.poll(now=...)`` drives woken instances before it
    returns, so waiting tests stay deterministic.
    """

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def engine(
    settings: EngineSettings,
    executors: ExecutorRegistry,
    scheduler: ThreadTimeoutScheduler,
    sleeps: list[float],
) -> Generator[WorkflowEngine, None, None]:
    eng = WorkflowEngine(
        executors=executors,
        settings=settings,
        scheduler=scheduler,
        signal_pool=InlinePool(),
        sleep=sleeps.append,
    )
    yield eng
    eng.shutdown()


# =============================================================================
# Sample definitions
# =============================================================================


def task(name: str, executor: str = "noop", **config: Any) -> StepBuilder:
    """A TASK step builder bound to *executor*."""
    return StepBuilder(name, StepKind.TASK).executor(executor).configs(config)


@pytest.fixture
def linear_definition() -> WorkflowDefinition:
    """start → fetch → transform → store → end"""
    return (
        WorkflowBuilder("etl.linear")
        .add_step(task("fetch"))
        .add_step(task("transform"))
        .add_step(task("store"))
        .build()
    )


@pytest.fixture
def approval_definition() -> WorkflowDefinition:
    """start → manager_review (user task) → notify (service call) → end"""
    return (
        WorkflowBuilder("leave.approval")
        .add_user_task("manager_review", assignee="manager")
        .add_service_call("notify", "https://hr.example.com/api/leave")
        .build()
    )


@pytest.fixture
def routing_definition() -> WorkflowDefinition:
    """Route on ``days``: > 5 → director, > 2 → manager, else auto."""
    return (
        WorkflowBuilder("leave.routing")
        .add_conditional_step(
            "route",
            None,
            ConditionalStepBuilder()
            .when_number("days", ">", 5).then_goto("director")
            .when_number("days", ">", 2).then_goto("manager")
            .otherwise("auto"),
        )
        .add_step(task("director"))
        .add_step(task("manager"))
        .add_step(task("auto"))
        .connect("director", "auto")
        .connect("manager", "auto")
        .build()
    )
