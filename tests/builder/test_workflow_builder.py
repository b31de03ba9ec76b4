"""Tests for stepflow.builder.workflow_builder — assembling and sealing definitions."""

from __future__ import annotations

import pytest

from stepflow.builder import (
    END_STEP_ID,
    START_STEP_ID,
    ConditionalStepBuilder,
    ParallelStepBuilder,
    StepBuilder,
    WorkflowBuilder,
)
from stepflow.core.errors import ConfigurationError, ValidationError
from stepflow.model import DefinitionStatus, StepDefinition, StepKind, steps_equivalent


def _task(name: str) -> StepBuilder:
    return StepBuilder(name, StepKind.TASK).executor("noop")


# ── Ids, orders and markers ─────────────────────────────────────────


class TestAutoAssignment:
    def test_ids_and_orders(self):
        definition = WorkflowBuilder("wf").add_step(_task("a")).add_step(_task("b")).build()
        a = definition.find_step_by_name("a")
        b = definition.find_step_by_name("b")
        assert (a.id, a.order) == ("step_1", 1)
        assert (b.id, b.order) == ("step_2", 2)

    def test_explicit_id_and_order_win(self):
        definition = (
            WorkflowBuilder("wf")
            .add_step(_task("a").id("fetch").order(10))
            .add_step(_task("b"))
            .build()
        )
        assert definition.get_step("fetch").order == 10
        assert definition.find_step_by_name("b").id == "step_1"

    def test_callable_step_config(self):
        definition = (
            WorkflowBuilder("wf")
            .add_step(lambda sb: sb.name("a").kind(StepKind.TASK).executor("noop"))
            .build()
        )
        assert definition.find_step_by_name("a").kind is StepKind.TASK

    def test_ready_step_definition(self):
        step = StepDefinition(id="custom", name="a", kind=StepKind.TASK, order=1, executor="noop")
        assert WorkflowBuilder("wf").add_step(step).build().get_step("custom") == step

    def test_start_and_end_inserted(self):
        definition = WorkflowBuilder("wf").add_step(_task("a")).add_step(_task("b")).build()
        starts = [s for s in definition.steps if s.kind is StepKind.START]
        ends = [s for s in definition.steps if s.kind is StepKind.END]
        assert len(starts) == 1
        assert len(ends) == 1
        assert (starts[0].id, starts[0].order) == (START_STEP_ID, 0)
        assert (ends[0].id, ends[0].order) == (END_STEP_ID, 3)
        assert definition.steps[0] is starts[0]
        assert definition.steps[-1] is ends[0]

    def test_end_follows_highest_order(self):
        definition = WorkflowBuilder("wf").add_step(_task("a").order(42)).build()
        assert definition.end_steps[0].order == 43

    def test_existing_markers_kept(self):
        definition = (
            WorkflowBuilder("wf")
            .add_step(StepBuilder("begin", StepKind.START).order(0))
            .add_step(_task("a"))
            .add_step(StepBuilder("finish", StepKind.END).order(9))
            .build()
        )
        assert [s.name for s in definition.steps if s.kind.is_marker] == ["begin", "finish"]
        assert not definition.has_step(START_STEP_ID)

    def test_built_definition_is_draft_by_default(self):
        assert WorkflowBuilder("wf").add_step(_task("a")).build().status is DefinitionStatus.DRAFT

    def test_status_and_metadata(self):
        definition = (
            WorkflowBuilder()
            .id("orders")
            .name("orders.flow")
            .version("3")
            .status("ACTIVE")
            .description("demo")
            .add_step(_task("a"))
            .build()
        )
        assert definition.id == "orders"
        assert definition.name == "orders.flow"
        assert definition.version == "3"
        assert definition.is_active


# ── Validation ──────────────────────────────────────────────────────


class TestValidation:
    def test_dangling_next_step_id(self):
        builder = WorkflowBuilder("wf").add_step(_task("a").next_step("step_99"))
        with pytest.raises(ValidationError) as exc:
            builder.build()
        assert exc.value.field == "next_step_id"

    def test_dangling_error_step_id(self):
        with pytest.raises(ValidationError):
            WorkflowBuilder("wf").add_step(_task("a").on_error("nowhere")).build()

    def test_duplicate_order(self):
        builder = WorkflowBuilder("wf").add_step(_task("a").order(1)).add_step(_task("b").order(1))
        with pytest.raises(ValidationError, match="Duplicate step order"):
            builder.build()

    def test_duplicate_name(self):
        builder = WorkflowBuilder("wf").add_step(_task("a"))
        with pytest.raises(ConfigurationError, match="Duplicate step name"):
            builder.add_step(_task("a"))

    def test_missing_name(self):
        with pytest.raises(ConfigurationError, match="name is required"):
            WorkflowBuilder().add_step(_task("a")).build()

    def test_no_steps(self):
        with pytest.raises(ValidationError):
            WorkflowBuilder("wf").build()

    def test_invalid_step_config_is_synchronous(self):
        with pytest.raises(ConfigurationError, match="executor"):
            WorkflowBuilder("wf").add_step(StepBuilder("a", StepKind.TASK))

    def test_bad_add_step_argument(self):
        with pytest.raises(ConfigurationError):
            WorkflowBuilder("wf").add_step(42)  # type: ignore[arg-type]

    def test_invalid_gateway_fails_build(self):
        builder = WorkflowBuilder("wf").add_conditional_step("route", None, {"branches": []})
        with pytest.raises(ConfigurationError, match="at least one branch"):
            builder.build()

    def test_gateway_target_must_exist(self):
        builder = (
            WorkflowBuilder("wf")
            .add_conditional_step(
                "route", None,
                ConditionalStepBuilder().when_expression("x > 1").then_goto("missing").otherwise("a"),
            )
            .add_step(_task("a"))
        )
        with pytest.raises(ValidationError, match="missing"):
            builder.build()


# ── Transitions ─────────────────────────────────────────────────────


class TestConnect:
    def test_connect_rewrites_record(self):
        builder = WorkflowBuilder("wf").add_step(_task("a")).add_step(_task("b")).add_step(_task("c"))
        before = builder.get_step("a")
        builder.connect("a", "c")
        after = builder.get_step("a")
        assert before.next_step_id is None
        assert after.next_step_id == builder.get_step("c").id
        assert after is not before

    def test_on_error(self):
        definition = (
            WorkflowBuilder("wf")
            .add_step(_task("a"))
            .add_step(_task("handler"))
            .on_error("a", "handler")
            .build()
        )
        assert definition.find_step_by_name("a").error_step_id == definition.find_step_by_name("handler").id

    def test_connect_unknown_name(self):
        with pytest.raises(ConfigurationError, match="Unknown step name"):
            WorkflowBuilder("wf").add_step(_task("a")).connect("a", "ghost")

    def test_built_definition_unaffected_by_later_connect(self):
        builder = WorkflowBuilder("wf").add_step(_task("a")).add_step(_task("b"))
        first = builder.build()
        builder.connect("a", "a")
        assert first.find_step_by_name("a").next_step_id is None


# ── Gateways ────────────────────────────────────────────────────────


class TestGateways:
    def test_condition_targets_resolved_by_name(self, routing_definition):
        route = routing_definition.find_step_by_name("route")
        targets = [b["target"] for b in route.configuration["branches"]]
        assert targets == [
            routing_definition.find_step_by_name("director").id,
            routing_definition.find_step_by_name("manager").id,
        ]
        assert route.configuration["default_branch"] == routing_definition.find_step_by_name("auto").id
        assert route.kind is StepKind.CONDITION
        assert route.timeout == 10

    def test_condition_from_callable(self):
        definition = (
            WorkflowBuilder("wf")
            .add_conditional_step(
                "route", 5,
                lambda cb: cb.when_boolean("vip").then_goto("a").otherwise("a"),
            )
            .add_step(_task("a"))
            .build()
        )
        assert definition.find_step_by_name("route").order == 5

    def test_parallel_members_resolved(self):
        definition = (
            WorkflowBuilder("wf")
            .add_parallel_steps(
                "fan_out", None,
                ParallelStepBuilder()
                .add_branch("one", "One", ["a"])
                .add_branch("two", "Two", ["b"])
                .on_error("fallback"),
            )
            .add_step(_task("a"))
            .add_step(_task("b"))
            .add_step(_task("fallback"))
            .build()
        )
        gateway = definition.find_step_by_name("fan_out")
        assert gateway.branch_member_ids() == [
            definition.find_step_by_name("a").id,
            definition.find_step_by_name("b").id,
        ]
        assert gateway.configuration["error_step_id"] == definition.find_step_by_name("fallback").id
        assert gateway.configuration["join_type"] == "AND"


# ── DSL helpers ─────────────────────────────────────────────────────


class TestDslHelpers:
    def test_kind_defaults(self):
        definition = (
            WorkflowBuilder("wf")
            .add_user_task("review", "manager")
            .add_service_call("notify", "https://example.com/hook")
            .add_script("score", "python", "result = 1")
            .add_email("mail", "a@example.com", "Hi", template="welcome")
            .add_timer("pause", 30)
            .build()
        )
        review = definition.find_step_by_name("review")
        notify = definition.find_step_by_name("notify")
        score = definition.find_step_by_name("score")
        mail = definition.find_step_by_name("mail")
        pause = definition.find_step_by_name("pause")

        assert review.timeout == 86400
        assert review.config("assignee") == "manager"
        assert (notify.timeout, notify.retry_count, notify.config("http_method")) == (30, 3, "POST")
        assert score.timeout == 300
        assert score.config("script_type") == "python"
        assert mail.config("email_template") == "welcome"
        assert mail.retry_count == 2
        assert pause.wait_duration == 30.0
        assert pause.timeout is None


# ── Idempotence and introspection ───────────────────────────────────


class TestBuild:
    def test_build_twice_equivalent(self):
        builder = (
            WorkflowBuilder("wf")
            .add_step(_task("a"))
            .add_conditional_step(
                "route", None,
                ConditionalStepBuilder().when_expression("n > 1").then_goto("b").otherwise("c"),
            )
            .add_step(_task("b"))
            .add_step(_task("c"))
        )
        first = builder.build()
        second = builder.build()
        assert steps_equivalent(first.steps, second.steps)
        assert first.steps == second.steps
        assert first.id == second.id

    def test_build_does_not_mutate_builder(self):
        builder = WorkflowBuilder("wf").add_step(_task("a"))
        builder.build()
        assert builder.step_count == 1
        assert builder.step_names == ["a"]

    def test_clone_is_independent(self):
        builder = WorkflowBuilder("wf").add_step(_task("a"))
        other = builder.clone().add_step(_task("b"))
        assert builder.step_count == 1
        assert other.step_count == 2

    def test_clear_steps(self):
        builder = WorkflowBuilder("wf").add_step(_task("a")).clear_steps()
        assert not builder.has_step("a")
        assert builder.add_step(_task("a")).get_step("a").id == "step_1"
