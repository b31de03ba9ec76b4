"""Tests for stepflow.builder.parallel — PARALLEL_GATEWAY configuration."""

from __future__ import annotations

import pytest

from stepflow.builder import ParallelStepBuilder
from stepflow.core.errors import ConfigurationError
from stepflow.parallel import ExecutionStrategy, GatewayConfig, ParallelBranch, register_join_policy
from stepflow.parallel.join import JoinDecision, JoinEvaluation


def _two_branches() -> ParallelStepBuilder:
    return ParallelStepBuilder().add_branch("a", "A", ["step_a"]).add_branch("b", "B", ["step_b"])


class TestBuild:
    def test_defaults(self):
        config = _two_branches().build()
        assert config["join_type"] == "AND"
        assert config["execution_strategy"] == "PARALLEL"
        assert config["collect_results"] is True
        assert config["wait_for_all"] is False
        assert config["branch_count"] == 2
        assert config["optional_branch_count"] == 0
        assert config["has_timeout"] is False
        assert [b["step_ids"] for b in config["branches"]] == [["step_a"], ["step_b"]]

    def test_round_trips_through_gateway_config(self):
        config = (
            _two_branches()
            .add_optional_branch("c", "C", ["step_c"], priority=3)
            .join_or()
            .batch(2)
            .timeout(45)
            .on_timeout("late")
            .on_error("broken")
            .share_data()
            .wait_for_all()
            .build()
        )
        parsed = GatewayConfig.from_mapping(config)
        assert parsed.join_type == "OR"
        assert parsed.strategy is ExecutionStrategy.BATCH
        assert parsed.batch_size == 2
        assert parsed.timeout == 45.0
        assert parsed.timeout_step_id == "late"
        assert parsed.error_step_id == "broken"
        assert parsed.share_data and parsed.wait_for_all
        assert parsed.branches[2] == ParallelBranch("c", "C", ("step_c",), priority=3, optional=True)
        assert [b.id for b in parsed.dispatch_order()] == ["c", "a", "b"]

    def test_min_success(self):
        config = _two_branches().min_success(1).build()
        assert config["join_type"] == "CUSTOM"
        assert config["join_condition"] == "successCount >= 1"

    def test_success_rate(self):
        config = _two_branches().success_rate(0.5).build()
        assert config["join_condition"] == "(successCount * 1.0 / totalCount) >= 0.5"

    def test_join_switch_clears_condition(self):
        config = _two_branches().min_success(2).join_majority().build()
        assert config["join_type"] == "MAJORITY"
        assert "join_condition" not in config

    def test_registered_policy(self):
        register_join_policy("NEVER", lambda counts, cond: JoinEvaluation(JoinDecision.FAILED, "never"))
        assert _two_branches().join_with("never").build()["join_type"] == "NEVER"

    def test_add_branches_from_dicts(self):
        builder = ParallelStepBuilder().add_branches([
            {"id": "x", "name": "X", "step_ids": ["s1", "s2"]},
            ParallelBranch("y", "Y", ("s3",), optional=True),
        ])
        assert [b.id for b in builder.branches] == ["x", "y"]
        assert builder.remove_branch("x").branches[0].id == "y"

    def test_sequential(self):
        assert _two_branches().sequential().build()["execution_strategy"] == "SEQUENTIAL"


class TestValidation:
    def test_no_branches(self):
        with pytest.raises(ConfigurationError, match="at least one branch"):
            ParallelStepBuilder().build()

    def test_duplicate_branch(self):
        with pytest.raises(ConfigurationError, match="Duplicate branch"):
            _two_branches().add_branch("a", "again", ["x"])

    def test_empty_branch(self):
        with pytest.raises(ConfigurationError, match="no member steps"):
            ParallelStepBuilder().add_branch("a", "A", [])

    def test_custom_requires_condition(self):
        with pytest.raises(ConfigurationError):
            _two_branches().custom_join("")

    def test_custom_condition_must_parse(self):
        with pytest.raises(ConfigurationError, match="Invalid join condition"):
            _two_branches().custom_join("successCount >=").build()

    def test_unknown_join(self):
        with pytest.raises(ConfigurationError, match="Unknown join type"):
            _two_branches().join_with("quorum").build()

    @pytest.mark.parametrize("size", [0, -1])
    def test_batch_size(self, size):
        with pytest.raises(ConfigurationError):
            _two_branches().batch(size)

    def test_batch_size_in_raw_config(self):
        config = _two_branches().build()
        config.update(execution_strategy="BATCH", batch_size=0)
        with pytest.raises(ConfigurationError, match="batch_size"):
            GatewayConfig.from_mapping(config)

    def test_max_concurrency(self):
        with pytest.raises(ConfigurationError):
            _two_branches().max_concurrency(-1)
        assert _two_branches().max_concurrency(0).build()["max_concurrency"] == 0

    def test_timeout(self):
        with pytest.raises(ConfigurationError):
            _two_branches().timeout(0)

    @pytest.mark.parametrize("rate", [0, 1.5])
    def test_success_rate_bounds(self, rate):
        with pytest.raises(ConfigurationError):
            _two_branches().success_rate(rate)

    def test_min_success_bounds(self):
        with pytest.raises(ConfigurationError):
            _two_branches().min_success(0)
