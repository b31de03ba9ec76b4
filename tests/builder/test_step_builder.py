"""Tests for stepflow.builder.step_builder — single-step assembly and kind defaults."""

from __future__ import annotations

import pytest

from stepflow.builder import StepBuilder
from stepflow.builder.step_builder import HIGH_PRIORITY, LOW_PRIORITY
from stepflow.core.errors import ConfigurationError
from stepflow.model import StepKind


class TestKindDefaults:
    def test_user_task(self):
        step = StepBuilder("review", StepKind.USER_TASK).executor("user_task").build(default_id="s", default_order=1)
        assert step.timeout == 24 * 60 * 60
        assert step.retry_count == 0

    def test_service_call(self):
        step = (
            StepBuilder("call", StepKind.SERVICE_CALL)
            .executor("http")
            .service_url("https://example.com")
            .build(default_id="s", default_order=1)
        )
        assert step.timeout == 30
        assert step.retry_count == 3
        assert step.config("http_method") == "POST"

    def test_script(self):
        step = StepBuilder("s", StepKind.SCRIPT).executor("script").script("x = 1").build(default_id="s", default_order=1)
        assert step.timeout == 300
        assert step.config("script_type") == "javascript"

    def test_condition_timeout(self):
        assert StepBuilder("c", StepKind.CONDITION).build(default_id="c", default_order=1).timeout == 10

    def test_parallel_gateway_join_default(self):
        step = StepBuilder("p", StepKind.PARALLEL_GATEWAY).build(default_id="p", default_order=1)
        assert step.config("join_type") == "AND"
        assert step.timeout is None

    def test_explicit_values_survive_kind_change(self):
        step = (
            StepBuilder("call")
            .timeout(5)
            .retry_count(1)
            .kind(StepKind.SERVICE_CALL)
            .executor("http")
            .service_url("https://example.com")
            .http_method("put")
            .build(default_id="s", default_order=1)
        )
        assert step.timeout == 5
        assert step.retry_count == 1
        assert step.config("http_method") == "PUT"

    def test_no_retry(self):
        step = (
            StepBuilder("call", StepKind.SERVICE_CALL)
            .executor("http")
            .service_url("https://example.com")
            .no_retry()
            .build(default_id="s", default_order=1)
        )
        assert step.retry_count == 0


class TestValidation:
    @pytest.mark.parametrize(
        ("builder", "key"),
        [
            (StepBuilder("t", StepKind.TASK), "executor"),
            (StepBuilder("c", StepKind.SERVICE_CALL).executor("http"), "service_url"),
            (StepBuilder("s", StepKind.SCRIPT).executor("script"), "script"),
            (StepBuilder("e", StepKind.EMAIL).executor("email").email_to("a@example.com"), "email_subject"),
            (StepBuilder("e", StepKind.EMAIL).executor("email").email_subject("Hi"), "email_to"),
            (StepBuilder("w", StepKind.TIMER), "wait_duration"),
        ],
    )
    def test_kind_requirements(self, builder, key):
        with pytest.raises(ConfigurationError) as exc:
            builder.build(default_id="x", default_order=1)
        assert exc.value.key == key

    def test_name_required(self):
        with pytest.raises(ConfigurationError, match="name is required"):
            StepBuilder(kind=StepKind.START).build(default_id="x", default_order=0)

    def test_kind_required(self):
        with pytest.raises(ConfigurationError, match="no kind"):
            StepBuilder("a").build(default_id="x", default_order=1)

    def test_order_required_without_default(self):
        with pytest.raises(ConfigurationError, match="no order"):
            StepBuilder("a", StepKind.START).build(default_id="x")

    def test_id_required_without_default(self):
        with pytest.raises(ConfigurationError, match="no id"):
            StepBuilder("a", StepKind.START).order(0).build()

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="Unknown step kind"):
            StepBuilder("a", "TELEPORT")

    @pytest.mark.parametrize("bad", [0, -5])
    def test_timeout_must_be_positive(self, bad):
        with pytest.raises(ConfigurationError):
            StepBuilder("a").timeout(bad)

    @pytest.mark.parametrize("bad", [0.5, 0.999])
    def test_sub_second_timeout_rejected_up_front(self, bad):
        with pytest.raises(ConfigurationError, match="whole seconds"):
            StepBuilder("a").timeout(bad)

    def test_negative_retry(self):
        with pytest.raises(ConfigurationError):
            StepBuilder("a").retry_count(-1)

    def test_negative_order(self):
        with pytest.raises(ConfigurationError):
            StepBuilder("a").order(-1)

    def test_invalid_precondition(self):
        with pytest.raises(ConfigurationError, match="precondition"):
            StepBuilder("a").precondition("__import__('os')")

    def test_negative_wait_duration(self):
        with pytest.raises(ConfigurationError):
            StepBuilder("a").wait_duration(-1)


class TestSetters:
    def test_user_task_settings(self):
        step = (
            StepBuilder("review", StepKind.USER_TASK)
            .executor("user_task")
            .assignee("alice")
            .candidate_groups("managers", "hr")
            .high_priority()
            .form_key("leave-form")
            .timeout_hours(2)
            .build(default_id="s", default_order=1)
        )
        assert step.config("assignee") == "alice"
        assert step.config("candidate_groups") == ["managers", "hr"]
        assert step.config("priority") == HIGH_PRIORITY
        assert step.config("form_key") == "leave-form"
        assert step.timeout == 7200

    def test_headers_accumulate(self):
        step = (
            StepBuilder("call", StepKind.SERVICE_CALL)
            .executor("http")
            .service_url("https://example.com")
            .header("X-A", "1")
            .header("X-B", "2")
            .build(default_id="s", default_order=1)
        )
        assert step.config("headers") == {"X-A": "1", "X-B": "2"}

    def test_transitions_and_flags(self):
        step = (
            StepBuilder("a", StepKind.TASK)
            .executor("noop")
            .on_success("step_5")
            .on_error("step_9")
            .optional()
            .precondition("amount > 0")
            .description("demo")
            .build(default_id="s", default_order=1)
        )
        assert step.next_step_id == "step_5"
        assert step.error_step_id == "step_9"
        assert step.optional
        assert step.precondition == "amount > 0"
        assert step.description == "demo"

    def test_configure_callback(self):
        step = (
            StepBuilder("a", StepKind.TASK)
            .executor("noop")
            .configure(lambda cfg: cfg.update(batch=10))
            .build(default_id="s", default_order=1)
        )
        assert step.config("batch") == 10

    def test_config_values_copied(self):
        body = {"items": [1]}
        builder = StepBuilder("a", StepKind.TASK).executor("noop").request_body(body)
        body["items"].append(2)
        assert builder.build(default_id="s", default_order=1).config("request_body") == {"items": [1]}

    def test_clone_and_reset(self):
        original = StepBuilder("a", StepKind.TASK).executor("noop").low_priority()
        copy = original.clone().name("b")
        assert original.current_name == "a"
        assert copy.current_name == "b"
        assert copy.build(default_id="s", default_order=1).config("priority") == LOW_PRIORITY
        assert original.reset().current_kind is None
