"""Tests for stepflow.model.definition — sealed definitions, validation, serialization."""

from __future__ import annotations

import pytest

from stepflow.builder import ConditionalStepBuilder, ParallelStepBuilder, StepBuilder, WorkflowBuilder
from stepflow.core.errors import ValidationError
from stepflow.model import (
    DefinitionStatus,
    StepDefinition,
    StepKind,
    WorkflowDefinition,
    WorkflowManifest,
    steps_equivalent,
    validate_steps,
)


def _step(step_id: str, order: int, kind: StepKind = StepKind.TASK, **kwargs) -> StepDefinition:
    if kind.is_task_like:
        kwargs.setdefault("executor", "noop")
    return StepDefinition(id=step_id, name=step_id, kind=kind, order=order, **kwargs)


def _marked(*steps: StepDefinition) -> list[StepDefinition]:
    orders = [s.order for s in steps]
    return [
        _step("s", min(orders) - 1, StepKind.START),
        *steps,
        _step("e", max(orders) + 1, StepKind.END),
    ]


@pytest.fixture
def rich_definition() -> WorkflowDefinition:
    """A definition touching every serialized field and both gateway kinds."""
    return (
        WorkflowBuilder("orders.fulfilment")
        .description("Route, fan out, notify")
        .version("2.1")
        .config("owner", "ops")
        .add_step(
            StepBuilder("validate", StepKind.TASK)
            .executor("noop")
            .precondition("amount > 0")
            .optional()
        )
        .add_conditional_step(
            "route",
            None,
            ConditionalStepBuilder()
            .when_number("amount", ">", 1000).then_goto("screening")
            .otherwise("notify"),
        )
        .add_parallel_steps(
            "screening",
            None,
            ParallelStepBuilder()
            .add_branch("credit", "Credit", ["credit_check"])
            .add_optional_branch("crm", "CRM", ["crm_sync"])
            .timeout(30)
            .on_timeout("notify"),
        )
        .add_step(StepBuilder("credit_check", StepKind.TASK).executor("noop"))
        .add_step(StepBuilder("crm_sync", StepKind.TASK).executor("noop"))
        .add_email("notify", "ops@example.com", "Order processed")
        .add_step(StepBuilder("cleanup", StepKind.TASK).executor("noop"))
        .on_error("notify", "cleanup")
        .build()
    )


class TestValidateSteps:
    def test_duplicate_ids(self):
        with pytest.raises(ValidationError, match="Duplicate step id"):
            validate_steps(_marked(_step("a", 1), _step("a", 2)))

    def test_duplicate_orders(self):
        with pytest.raises(ValidationError, match="Duplicate step order"):
            validate_steps(_marked(_step("a", 1), _step("b", 1)))

    def test_dangling_next_step(self):
        with pytest.raises(ValidationError) as exc:
            validate_steps(_marked(_step("a", 1, next_step_id="ghost")))
        assert exc.value.field == "next_step_id"
        assert exc.value.value == "ghost"

    def test_dangling_error_step(self):
        with pytest.raises(ValidationError) as exc:
            validate_steps(_marked(_step("a", 1, error_step_id="ghost")))
        assert exc.value.field == "error_step_id"

    def test_dangling_condition_target(self):
        cond = _step(
            "c", 1, StepKind.CONDITION,
            configuration={"branches": [{"condition": {"kind": "default"}, "target": "ghost"}]},
        )
        with pytest.raises(ValidationError, match="ghost"):
            validate_steps(_marked(cond))

    def test_gateway_cannot_contain_itself(self):
        gateway = _step(
            "g", 1, StepKind.PARALLEL_GATEWAY,
            configuration={"branches": [{"id": "b", "step_ids": ["g"]}]},
        )
        with pytest.raises(ValidationError, match="own branches"):
            validate_steps(_marked(gateway))

    def test_markers_required(self):
        with pytest.raises(ValidationError, match="START"):
            validate_steps([_step("a", 1), _step("e", 2, StepKind.END)])
        with pytest.raises(ValidationError, match="END"):
            validate_steps([_step("s", 0, StepKind.START), _step("a", 1)])

    def test_markers_optional(self):
        validate_steps([_step("a", 1)], require_markers=False)

    def test_empty(self):
        with pytest.raises(ValidationError):
            validate_steps([])


class TestLookups:
    def test_steps_sorted_by_order(self):
        definition = WorkflowDefinition(
            id="wf", name="wf", steps=tuple(reversed(_marked(_step("a", 1), _step("b", 2))))
        )
        assert [s.order for s in definition.steps] == [0, 1, 2, 3]

    def test_start_and_end(self):
        definition = WorkflowDefinition(id="wf", name="wf", steps=tuple(_marked(_step("a", 1))))
        assert definition.start_step.id == "s"
        assert [s.id for s in definition.end_steps] == ["e"]

    def test_step_after_skips_branch_members(self, rich_definition):
        screening = rich_definition.find_step_by_name("screening")
        following = rich_definition.step_after(screening)
        assert following.name == "notify"
        assert rich_definition.find_step_by_name("credit_check").id in rich_definition.branch_member_ids

    def test_step_after_last(self):
        definition = WorkflowDefinition(id="wf", name="wf", steps=tuple(_marked(_step("a", 1))))
        assert definition.step_after(definition.get_step("e")) is None

    def test_get_step_unknown(self, rich_definition):
        assert rich_definition.get_step("nope") is None
        assert not rich_definition.has_step("nope")

    def test_with_status(self, rich_definition):
        active = rich_definition.with_status(DefinitionStatus.ACTIVE)
        assert active.is_active
        assert not rich_definition.is_active
        assert active.steps == rich_definition.steps


class TestImmutability:
    def test_definition_is_frozen(self, rich_definition):
        with pytest.raises(AttributeError):
            rich_definition.name = "changed"  # type: ignore[misc]

    def test_step_is_frozen(self):
        step = _step("a", 1)
        with pytest.raises(AttributeError):
            step.order = 5  # type: ignore[misc]

    def test_step_configuration_is_read_only(self):
        step = _step("a", 1, configuration={"headers": {"X": "1"}, "to": ["ops@example.com"]})
        with pytest.raises(TypeError):
            step.configuration["k"] = "tampered"  # type: ignore[index]
        with pytest.raises(TypeError):
            step.configuration["headers"]["X"] = "2"  # type: ignore[index]
        with pytest.raises(AttributeError):
            step.configuration["to"].append("x@example.com")  # type: ignore[attr-defined]
        assert step.config("to") == ["ops@example.com"]

    def test_sealed_definition_configuration_is_read_only(self, rich_definition):
        route = rich_definition.find_step_by_name("route")
        with pytest.raises(TypeError):
            route.configuration["default_branch"] = "tampered"  # type: ignore[index]
        with pytest.raises(TypeError):
            route.configuration["branches"][0]["target"] = "tampered"  # type: ignore[index]
        with pytest.raises(TypeError):
            rich_definition.configuration["x"] = 1  # type: ignore[index]
        assert rich_definition.to_dict()["configuration"] == {"owner": "ops"}

    def test_map_form_is_a_detached_copy(self, rich_definition):
        data = rich_definition.to_dict()
        data["configuration"]["owner"] = "someone-else"
        data["steps"][0].setdefault("configuration", {})["k"] = "v"
        assert rich_definition.configuration["owner"] == "ops"
        assert "k" not in rich_definition.steps[0].configuration

    def test_step_configuration_is_copied(self):
        config = {"headers": {"X": "1"}}
        step = _step("a", 1, configuration=config)
        config["headers"]["X"] = "2"
        assert step.configuration["headers"]["X"] == "1"
        step.config("headers")["X"] = "3"
        assert step.configuration["headers"]["X"] == "1"


class TestSerialization:
    def test_dict_round_trip(self, rich_definition):
        rebuilt = WorkflowDefinition.from_dict(rich_definition.to_dict())
        assert steps_equivalent(rebuilt.steps, rich_definition.steps)
        assert rebuilt.id == rich_definition.id
        assert rebuilt.version == "2.1"
        assert rebuilt.configuration == {"owner": "ops"}
        assert rebuilt.steps == rich_definition.steps

    def test_map_form_is_plain_data(self, rich_definition):
        data = rich_definition.to_dict()
        route = next(s for s in data["steps"] if s["name"] == "route")
        assert route["kind"] == "CONDITION"
        assert isinstance(route["configuration"]["branches"], list)
        assert isinstance(data["created_at"], str)

    def test_yaml_round_trip(self, rich_definition):
        text = rich_definition.to_yaml()
        assert "kind: WorkflowDefinition" in text
        rebuilt = WorkflowDefinition.from_yaml(text)
        assert steps_equivalent(rebuilt.steps, rich_definition.steps)
        assert rebuilt.description == "Route, fan out, notify"

    def test_from_dict_revalidates(self, rich_definition):
        data = rich_definition.to_dict()
        data["steps"][1]["next_step_id"] = "ghost"
        with pytest.raises(ValidationError):
            WorkflowDefinition.from_dict(data)

    def test_from_dict_malformed(self):
        with pytest.raises(ValidationError, match="Malformed"):
            WorkflowDefinition.from_dict({"id": "wf", "steps": [{"id": "a"}]})

    def test_steps_equivalent_detects_transition_change(self, rich_definition):
        steps = list(rich_definition.steps)
        steps[1] = steps[1].with_next_step(steps[-1].id)
        assert not steps_equivalent(steps, rich_definition.steps)


class TestManifest:
    YAML = """
apiVersion: stepflow.io/v1
kind: WorkflowDefinition
metadata:
  id: leave-approval
  name: leave.approval
  version: 1.0
  status: ACTIVE
spec:
  steps:
    - id: step_start
      name: start
      kind: START
      order: 0
    - id: step_1
      name: review
      kind: USER_TASK
      order: 1
      executor: user_task
      configuration:
        assignee: manager
    - id: step_end
      name: end
      kind: END
      order: 2
"""

    def test_parse(self):
        definition = WorkflowManifest.from_yaml(self.YAML).to_definition()
        assert definition.id == "leave-approval"
        assert definition.version == "1.0"
        assert definition.status is DefinitionStatus.ACTIVE
        assert definition.get_step("step_1").config("assignee") == "manager"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError, match="Invalid workflow manifest"):
            WorkflowManifest.from_yaml(self.YAML.replace("order: 1", "order: 1\n      colour: red"))

    def test_invalid_yaml(self):
        with pytest.raises(ValidationError, match="Invalid YAML"):
            WorkflowManifest.from_yaml("metadata: [unclosed")

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError, match="Expected a mapping"):
            WorkflowManifest.from_yaml("- a\n- b\n")

    def test_from_file(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(self.YAML, encoding="utf-8")
        assert WorkflowManifest.from_yaml_file(path).metadata.name == "leave.approval"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            WorkflowManifest.from_yaml_file(tmp_path / "missing.yaml")
