"""Build step configurations from defaults and caller parameters."""

from typing import Any, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from pipestep.domain.config.matrix import MatrixConfig, MatrixStepConfig, MultiCombinationMatrixConfig
from pipestep.domain.config.retry import RetryConfig, RetryStepConfig
from pipestep.domain.errors import ConfigurationError, format_validation_error

ModelT = TypeVar("ModelT", bound=BaseModel)

# Jenkins style parameter names, mapped to the field they set.
_RETRY_ALIASES = {
    "agentLabel": "execution_target",
    "suppressErrors": "suppress_failure",
    "retryCount": "retry_budget",
    "retryDelay": "retry_delay_seconds",
    "stageNameFilterPatterns": "log_scope_filters",
    "useBuiltinFailurePatterns": "use_builtin_failure_signatures",
    "customFailurePatterns": "custom_failure_signatures",
    "runSteps": "task",
    "postSuccess": "on_success",
    "postFailure": "on_failure",
    "postAlways": "on_always",
}
_MATRIX_ALIASES = {
    "failFast": "fail_fast",
    "stageNameSeparator": "stage_name_separator",
    "extraVars": "extra_vars",
    "returnStages": "return_stages",
}


def _normalize(parameters: Mapping[str, Any], aliases: Mapping[str, str]) -> dict:
    return {aliases.get(key, key): value for key, value in parameters.items()}


def _validate(model: Type[ModelT], step: str, parameters: dict) -> ModelT:
    try:
        return model(**parameters)
    except ValidationError as e:
        raise ConfigurationError(format_validation_error(e, header=f"[{step}] Invalid parameters")) from e


def build_retry_step(defaults: Optional[RetryConfig] = None, **parameters: Any) -> RetryStepConfig:
    """Merge retry defaults with caller parameters (caller wins)

    Raises:
        ConfigurationError: If a mandatory parameter is missing or unknown
    """
    merged = (defaults or RetryConfig()).model_dump()
    merged.update(_normalize(parameters, _RETRY_ALIASES))
    return _validate(RetryStepConfig, "retry", merged)


def _matrix_parameters(defaults: Optional[MatrixConfig], parameters: Mapping[str, Any]) -> dict:
    merged = (defaults or MatrixConfig()).model_dump(exclude={"max_workers"})
    merged.update(_normalize(parameters, _MATRIX_ALIASES))
    return merged


def build_matrix_step(defaults: Optional[MatrixConfig] = None, **parameters: Any) -> MatrixStepConfig:
    """Merge matrix defaults with caller parameters (caller wins)

    Raises:
        ConfigurationError: If axes or actions are missing, axes are empty,
            or a parameter is unknown
    """
    return _validate(MatrixStepConfig, "matrix", _matrix_parameters(defaults, parameters))


def build_multi_combination_step(
    defaults: Optional[MatrixConfig] = None, **parameters: Any
) -> MultiCombinationMatrixConfig:
    """Same as build_matrix_step, but `axes` is a list of axes mappings"""
    return _validate(MultiCombinationMatrixConfig, "matrix", _matrix_parameters(defaults, parameters))


def build_matrix_groups(
    groups: List[Mapping[str, Any]], defaults: Optional[MatrixConfig] = None
) -> List[MatrixStepConfig]:
    """Validate every group of a multi-group matrix

    Raises:
        ConfigurationError: If the list is empty or a group is invalid
    """
    if not groups:
        raise ConfigurationError("[matrix] At least one matrix group is required")
    return [build_matrix_step(defaults, **group) for group in groups]
