"""Tests for the dynamic matrix expander"""

import sys
import threading
from unittest.mock import MagicMock

import pytest

from pipestep.application.matrix_expander import (
    MatrixExpander,
    dynamic_matrix,
    dynamic_matrix_multi_combinations,
    dynamic_matrix_multi_groups,
    merge_stages,
)
from pipestep.domain.config.matrix import MatrixConfig
from pipestep.domain.config.steps import build_matrix_step
from pipestep.domain.errors import ConfigurationError, MatrixFailure
from pipestep.domain.models.fan_out_result import FanOutResult
from pipestep.domain.models.matrix_combination import MATRIX_STAGE_NAME, MATRIX_STAGE_VARS
from pipestep.domain.models.status import StageStatus

AXES = {
    "PLATFORM": ["linux", "mac", "windows"],
    "BROWSER": ["chrome", "edge", "firefox"],
}


def _noop(stage):
    pass


@pytest.fixture
def fake_runner():
    return MagicMock(return_value=FanOutResult())


class TestCombinations:
    """Tests for the cartesian product"""

    def test_product_size_and_order(self):
        """Test one combination per value selection, first axis varying slowest"""
        combinations = MatrixExpander.combinations(AXES)

        assert len(combinations) == 9
        assert combinations[0].values == {"PLATFORM": "linux", "BROWSER": "chrome"}
        assert combinations[1].values == {"PLATFORM": "linux", "BROWSER": "edge"}
        assert combinations[-1].values == {"PLATFORM": "windows", "BROWSER": "firefox"}

    def test_identifier_and_stage_name(self):
        """Test combination naming"""
        combination = MatrixExpander.combinations(AXES)[0]
        assert combination.identifier == "PLATFORM=linux, BROWSER=chrome"
        assert combination.stage_name() == "linux_chrome"
        assert combination.stage_name("-") == "linux-chrome"

    def test_empty_axes(self):
        """Test empty axes produce no combination"""
        assert MatrixExpander.combinations({}) == []

    def test_deterministic(self):
        """Test the same axes always give the same identifiers"""
        first = [c.identifier for c in MatrixExpander.combinations(AXES)]
        second = [c.identifier for c in MatrixExpander.combinations(AXES)]
        assert first == second
        assert len(set(first)) == 9


class TestExpand:
    """Tests for stage expansion"""

    def test_stages_keyed_by_identifier(self):
        """Test one stage per combination, in combination order"""
        stages = MatrixExpander().expand(build_matrix_step(axes=AXES, actions=_noop))
        assert list(stages)[:2] == ["PLATFORM=linux, BROWSER=chrome", "PLATFORM=linux, BROWSER=edge"]
        assert len(stages) == 9

    def test_stage_context_bindings(self):
        """Test actions receive axis values, stage vars and extra vars"""
        seen = []
        config = build_matrix_step(
            axes={"PLATFORM": ["linux"], "BROWSER": ["chrome"]},
            actions=seen.append,
            stage_name_separator="-",
            extra_vars={"REGION": "eu", "SHARDS": 4},
        )
        stages = MatrixExpander().expand(config)
        stages["PLATFORM=linux, BROWSER=chrome"]()

        stage = seen[0]
        assert stage.identifier == "PLATFORM=linux, BROWSER=chrome"
        assert stage["PLATFORM"] == "linux"
        assert stage.get("BROWSER") == "chrome"
        assert stage.stage_name == "linux-chrome"
        assert stage.stage_vars == "PLATFORM=linux, BROWSER=chrome"
        assert stage.env[MATRIX_STAGE_NAME] == "linux-chrome"
        assert stage.env[MATRIX_STAGE_VARS] == "PLATFORM=linux, BROWSER=chrome"
        assert stage["REGION"] == "eu"
        assert stage["SHARDS"] == "4"

    def test_stage_context_is_read_only(self):
        """Test actions cannot alter their bindings"""
        seen = []
        stages = MatrixExpander().expand(build_matrix_step(axes={"A": [1]}, actions=seen.append))
        stages["A=1"]()
        with pytest.raises(TypeError):
            seen[0].env["A"] = "2"

    def test_concurrent_stages_see_own_bindings(self):
        """Test sibling stages never observe each other's bindings"""
        barrier = threading.Barrier(3)
        seen = {}
        lock = threading.Lock()

        def actions(stage):
            barrier.wait(timeout=5)
            with lock:
                seen[stage.identifier] = stage["N"]

        result = dynamic_matrix(axes={"N": [1, 2, 3]}, actions=actions)

        assert result.succeeded
        assert seen == {"N=1": "1", "N=2": "2", "N=3": "3"}


class TestRun:
    """Tests for running a single matrix"""

    def test_return_stages(self, fake_runner):
        """Test stages are returned without running when requested"""
        expander = MatrixExpander(runner=fake_runner)
        stages = expander.run(build_matrix_step(axes=AXES, actions=_noop, return_stages=True))
        assert len(stages) == 9
        fake_runner.assert_not_called()

    def test_fan_out_uses_fail_fast(self, fake_runner):
        """Test the configured fail_fast is passed to the runner"""
        expander = MatrixExpander(runner=fake_runner, max_workers=2)
        expander.run(build_matrix_step(axes=AXES, actions=_noop, fail_fast=False))

        stages = fake_runner.call_args.args[0]
        assert len(stages) == 9
        assert fake_runner.call_args.kwargs == {"fail_fast": False, "max_workers": 2}

    def test_failed_stage_raises_matrix_failure(self):
        """Test a failing stage fails the matrix"""

        def actions(stage):
            if stage["PLATFORM"] == "mac":
                raise RuntimeError("boom")

        with pytest.raises(MatrixFailure, match="PLATFORM=mac") as exc_info:
            dynamic_matrix(axes={"PLATFORM": ["linux", "mac"]}, actions=actions, fail_fast=False)

        result = exc_info.value.result
        assert result.statuses["PLATFORM=linux"] == StageStatus.SUCCESS
        assert result.statuses["PLATFORM=mac"] == StageStatus.FAILURE

    def test_exiting_stage_fails_matrix(self):
        """Test an action calling sys.exit fails the matrix"""

        def actions(stage):
            if stage["PLATFORM"] == "mac":
                sys.exit(3)

        with pytest.raises(MatrixFailure, match="PLATFORM=mac"):
            dynamic_matrix(axes={"PLATFORM": ["linux", "mac"]}, actions=actions, fail_fast=False)

    def test_jenkins_parameter_names(self, fake_runner):
        """Test the Jenkins step parameter names are accepted"""
        stages = dynamic_matrix(
            expander=MatrixExpander(runner=fake_runner),
            axes={"A": ["x"], "B": ["y"]},
            actions=_noop,
            failFast=False,
            stageNameSeparator=".",
            extraVars={"C": "z"},
            returnStages=True,
        )
        assert list(stages) == ["A=x, B=y"]

    def test_defaults_applied(self, fake_runner):
        """Test file defaults are used when parameters are not given"""
        dynamic_matrix(
            defaults=MatrixConfig(fail_fast=False),
            expander=MatrixExpander(runner=fake_runner),
            axes={"A": ["x"]},
            actions=_noop,
        )
        assert fake_runner.call_args.kwargs["fail_fast"] is False


class TestValidation:
    """Tests for matrix parameter validation"""

    def test_missing_axes(self):
        """Test axes are mandatory"""
        with pytest.raises(ConfigurationError, match="axes"):
            dynamic_matrix(actions=_noop)

    def test_empty_axes(self):
        """Test empty axes are rejected"""
        with pytest.raises(ConfigurationError, match="at least one axis"):
            dynamic_matrix(axes={}, actions=_noop)

    def test_empty_axis_values(self):
        """Test an axis without values is rejected"""
        with pytest.raises(ConfigurationError, match="BROWSER"):
            dynamic_matrix(axes={"PLATFORM": ["linux"], "BROWSER": []}, actions=_noop)

    def test_missing_actions(self):
        """Test actions are mandatory"""
        with pytest.raises(ConfigurationError, match="actions"):
            dynamic_matrix(axes=AXES)

    def test_unknown_parameter(self):
        """Test unknown parameters are rejected"""
        with pytest.raises(ConfigurationError, match="parallel"):
            dynamic_matrix(axes=AXES, actions=_noop, parallel=True)

    def test_empty_combination_list(self):
        """Test a multi-combination matrix needs at least one mapping"""
        with pytest.raises(ConfigurationError, match="at least one axes combination"):
            dynamic_matrix_multi_combinations(axes=[], actions=_noop)

    def test_empty_group_list(self):
        """Test a multi-group matrix needs at least one group"""
        with pytest.raises(ConfigurationError, match="At least one matrix group"):
            dynamic_matrix_multi_groups([])


class TestMultiCombinations:
    """Tests for several axes mappings sharing one action"""

    def test_stage_count_is_sum_of_products(self, fake_runner):
        """Test stages of every mapping are merged"""
        stages = dynamic_matrix_multi_combinations(
            expander=MatrixExpander(runner=fake_runner),
            axes=[AXES, {"PLATFORM": ["android"], "BROWSER": ["chrome", "samsung"]}],
            actions=_noop,
            return_stages=True,
        )
        assert len(stages) == 11
        assert "PLATFORM=android, BROWSER=samsung" in stages
        fake_runner.assert_not_called()

    def test_overlapping_identifiers_collapse(self, fake_runner):
        """Test a combination present in two mappings is run once"""
        stages = dynamic_matrix_multi_combinations(
            expander=MatrixExpander(runner=fake_runner),
            axes=[{"A": [1, 2]}, {"A": [2, 3]}],
            actions=_noop,
            return_stages=True,
        )
        assert list(stages) == ["A=1", "A=2", "A=3"]

    def test_runs_all_stages_in_one_fan_out(self, fake_runner):
        """Test all mappings are run with a single runner call"""
        dynamic_matrix_multi_combinations(
            expander=MatrixExpander(runner=fake_runner),
            axes=[{"A": [1, 2]}, {"B": [3]}],
            actions=_noop,
            fail_fast=False,
        )
        fake_runner.assert_called_once()
        assert list(fake_runner.call_args.args[0]) == ["A=1", "A=2", "B=3"]
        assert fake_runner.call_args.kwargs["fail_fast"] is False


class TestMultiGroups:
    """Tests for heterogeneous matrix groups"""

    def test_groups_keep_their_own_actions(self):
        """Test every group runs its own action and separator"""
        calls = []
        lock = threading.Lock()

        def record(tag):
            def actions(stage):
                with lock:
                    calls.append((tag, stage.stage_name))

            return actions

        result = dynamic_matrix_multi_groups(
            [
                {"axes": {"OS": ["linux"], "PY": ["3.11"]}, "actions": record("unit")},
                {"axes": {"OS": ["mac"]}, "actions": record("e2e"), "stageNameSeparator": "-"},
            ]
        )

        assert result.succeeded
        assert sorted(calls) == [("e2e", "mac"), ("unit", "linux_3.11")]

    def test_merged_fail_fast_uses_last_group(self, fake_runner):
        """Test the last group's fail_fast applies when groups disagree"""
        dynamic_matrix_multi_groups(
            [
                {"axes": {"A": [1]}, "actions": _noop, "fail_fast": True},
                {"axes": {"B": [1]}, "actions": _noop, "fail_fast": False},
            ],
            expander=MatrixExpander(runner=fake_runner),
        )
        assert fake_runner.call_args.kwargs["fail_fast"] is False

    def test_explicit_merged_fail_fast_wins(self, fake_runner):
        """Test an explicit merged fail_fast overrides the groups"""
        dynamic_matrix_multi_groups(
            [
                {"axes": {"A": [1]}, "actions": _noop, "fail_fast": False},
                {"axes": {"B": [1]}, "actions": _noop, "fail_fast": False},
            ],
            expander=MatrixExpander(runner=fake_runner),
            merged_fail_fast=True,
        )
        assert fake_runner.call_args.kwargs["fail_fast"] is True

    def test_invalid_group(self):
        """Test a group without actions is rejected"""
        with pytest.raises(ConfigurationError, match="actions"):
            dynamic_matrix_multi_groups([{"axes": {"A": [1]}}])


class TestMergeStages:
    """Tests for merge_stages"""

    def test_later_definition_wins(self):
        """Test duplicate identifiers keep the later stage"""

        def first():
            pass

        def second():
            pass

        merged = merge_stages([{"A=1": first, "A=2": first}, {"A=1": second}])
        assert merged == {"A=1": second, "A=2": first}
