"""Dynamic matrix - expand axes into named stages and fan them out

Mimics a declarative matrix with extra options: every combination of axis
values becomes a stage named after its bindings, e.g. for axes
{PLATFORM: [linux, mac], BROWSER: [chrome]} the stages are
"PLATFORM=linux, BROWSER=chrome" and "PLATFORM=mac, BROWSER=chrome".

Each stage action receives a StageContext exposing the axis values plus:
    - MATRIX_STAGE_NAME: the axis values joined with the separator ("linux_chrome")
    - MATRIX_STAGE_VARS: the key=value pairs joined with ", "
"""

import itertools
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pipestep.domain.config.matrix import Axes, MatrixConfig, MatrixStepConfig, MultiCombinationMatrixConfig
from pipestep.domain.config.steps import build_matrix_groups, build_matrix_step, build_multi_combination_step
from pipestep.domain.errors import MatrixFailure
from pipestep.domain.models.fan_out_result import FanOutResult
from pipestep.domain.models.matrix_combination import MatrixCombination, StageContext
from pipestep.infrastructure.execution import with_bindings
from pipestep.infrastructure.fan_out import run_all

logger = logging.getLogger(__name__)

Stages = Dict[str, Callable[[], Any]]
Runner = Callable[..., FanOutResult]


class MatrixExpander:
    """Expand matrix configurations into stages and run them"""

    def __init__(self, runner: Runner = run_all, max_workers: Optional[int] = None):
        """Initialize matrix expander

        Args:
            runner: Fan-out primitive, called as runner(stages, fail_fast=..., max_workers=...)
            max_workers: Maximum number of stages running at once
        """
        self.runner = runner
        self.max_workers = max_workers

    @staticmethod
    def combinations(axes: Axes) -> List[MatrixCombination]:
        """Cartesian product of the axes, in axis then value declaration order"""
        if not axes:
            return []
        axes_flatten = [[{name: value} for value in values] for name, values in axes.items()]
        combinations = []
        for product in itertools.product(*axes_flatten):
            values: Dict[str, Any] = {}
            for single in product:
                values.update(single)
            combinations.append(MatrixCombination(values))
        return combinations

    def expand(self, config: MatrixStepConfig) -> Stages:
        """Build one named stage per combination

        Returns:
            Identifier -> stage callable, in combination order
        """
        stages: Stages = {}
        for combination in self.combinations(config.axes):
            identifier = combination.identifier
            env = combination.env(config.stage_name_separator, config.extra_vars)
            logger.info(f"[matrix] Matrix group vars are:\n {env}")
            stages[identifier] = self._make_stage(identifier, combination, env, config.actions)
        return stages

    @staticmethod
    def _make_stage(
        identifier: str,
        combination: MatrixCombination,
        env: Dict[str, str],
        actions: Callable[[StageContext], Any],
    ) -> Callable[[], Any]:
        def _stage() -> Any:
            logger.info(f"[matrix] Stage '{identifier}'")
            return with_bindings(
                env, lambda bound: actions(StageContext(identifier, combination, bound))
            )

        _stage.__name__ = identifier
        return _stage

    def run(self, config: MatrixStepConfig):
        """Expand and either return the stages or run them concurrently

        Returns:
            The stages when `return_stages` is set, otherwise the fan-out result

        Raises:
            MatrixFailure: If a stage failed
        """
        stages = self.expand(config)
        if config.return_stages:
            return stages
        return self.fan_out(stages, config.fail_fast)

    def run_multi_combinations(
        self, config: MultiCombinationMatrixConfig, merged_fail_fast: Optional[bool] = None
    ):
        """Expand every axes mapping with the shared parameters and run them all at once

        Returns:
            The merged stages when `return_stages` is set, otherwise the fan-out result
        """
        configs = config.split()
        stages = merge_stages(self.expand(c) for c in configs)
        if config.return_stages:
            return stages
        return self.fan_out(stages, self._merged_fail_fast(configs, merged_fail_fast))

    def run_multi_groups(
        self, groups: Sequence[MatrixStepConfig], merged_fail_fast: Optional[bool] = None
    ) -> FanOutResult:
        """Expand heterogeneous groups and run all their stages at once"""
        stages = merge_stages(self.expand(group) for group in groups)
        return self.fan_out(stages, self._merged_fail_fast(groups, merged_fail_fast))

    def fan_out(self, stages: Mapping[str, Callable[[], Any]], fail_fast: bool) -> FanOutResult:
        """Run stages concurrently

        Raises:
            MatrixFailure: If a stage failed
        """
        logger.info(f"[matrix] Running {len(stages)} stage(s) in parallel (fail fast: {fail_fast})")
        result = self.runner(stages, fail_fast=fail_fast, max_workers=self.max_workers)
        if result.failed:
            raise MatrixFailure(result)
        return result

    @staticmethod
    def _merged_fail_fast(configs: Sequence[MatrixStepConfig], merged_fail_fast: Optional[bool]) -> bool:
        """Fail-fast policy of one fan-out built from several configurations

        An explicit value wins; otherwise the last configuration's flag is used.
        """
        flags = {c.fail_fast for c in configs}
        if merged_fail_fast is not None:
            return merged_fail_fast
        if len(flags) > 1:
            logger.warning(
                "[matrix] Groups disagree on fail_fast; the merged stages use the last group's "
                f"value ({configs[-1].fail_fast}). Pass merged_fail_fast to choose."
            )
        return configs[-1].fail_fast if configs else False


def merge_stages(stage_sets) -> Stages:
    """Merge stage mappings into one; a later identifier replaces an earlier one"""
    merged: Stages = {}
    for stages in stage_sets:
        for identifier, stage in stages.items():
            if identifier in merged:
                logger.warning(f"[matrix] Duplicate stage '{identifier}', the later definition wins")
            merged[identifier] = stage
    return merged


def dynamic_matrix(
    defaults: Optional[MatrixConfig] = None,
    expander: Optional[MatrixExpander] = None,
    **parameters: Any,
):
    """Validate `parameters` and run (or return) a single matrix

    Raises:
        ConfigurationError: If axes/actions are missing, empty or unknown parameters are given
        MatrixFailure: If a stage failed
    """
    config = build_matrix_step(defaults, **parameters)
    return (expander or _default_expander(defaults)).run(config)


def dynamic_matrix_multi_combinations(
    defaults: Optional[MatrixConfig] = None,
    expander: Optional[MatrixExpander] = None,
    merged_fail_fast: Optional[bool] = None,
    **parameters: Any,
):
    """Same as dynamic_matrix, but `axes` is a list of axes mappings"""
    config = build_multi_combination_step(defaults, **parameters)
    return (expander or _default_expander(defaults)).run_multi_combinations(config, merged_fail_fast)


def dynamic_matrix_multi_groups(
    groups: List[Mapping[str, Any]],
    defaults: Optional[MatrixConfig] = None,
    expander: Optional[MatrixExpander] = None,
    merged_fail_fast: Optional[bool] = None,
) -> FanOutResult:
    """Run several independent matrix configurations as one fan-out"""
    configs = build_matrix_groups(groups, defaults)
    return (expander or _default_expander(defaults)).run_multi_groups(configs, merged_fail_fast)


def _default_expander(defaults: Optional[MatrixConfig]) -> MatrixExpander:
    return MatrixExpander(max_workers=defaults.max_workers if defaults else None)
