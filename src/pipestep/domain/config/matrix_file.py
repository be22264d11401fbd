"""Matrix definition file models."""

from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipestep.domain.config.matrix import Axes


class MatrixDefinition(BaseModel):
    """One matrix of a definition file.

    Attributes:
        axes: Axes mapping, or a list of axes mappings (multiple combinations)
        command: Shell command run for every combination
        execution_target: Label of the execution context running the command
        retry: Conditional retry parameters for the command (None = no retry)
        fail_fast: Overrides the matrix default
        stage_name_separator: Overrides the matrix default
        extra_vars: Variables injected into every combination
    """

    axes: Union[Axes, List[Axes]]
    command: Optional[str] = None
    execution_target: str = "local"
    retry: Optional[Dict[str, Any]] = None
    fail_fast: Optional[bool] = None
    stage_name_separator: Optional[str] = None
    extra_vars: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("retry")
    @classmethod
    def _retry_has_no_callables(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        reserved = {"task", "on_success", "on_failure", "on_always", "execution_target", "stage_name"}
        if value is not None and reserved & set(value):
            raise ValueError(f"retry section cannot set: {sorted(reserved & set(value))}")
        return value

    @property
    def is_multi_combination(self) -> bool:
        return isinstance(self.axes, list)

    def step_parameters(self, actions: Callable[..., Any]) -> Dict[str, Any]:
        """Parameters for the matrix step builders; unset overrides are left out"""
        parameters: Dict[str, Any] = {
            "axes": self.axes,
            "actions": actions,
            "extra_vars": self.extra_vars,
        }
        if self.fail_fast is not None:
            parameters["fail_fast"] = self.fail_fast
        if self.stage_name_separator is not None:
            parameters["stage_name_separator"] = self.stage_name_separator
        return parameters


class MatrixDocument(BaseModel):
    """A matrix definition file: one or more groups run as a single fan-out.

    Attributes:
        groups: Matrix definitions
        fail_fast: Fail-fast policy of the merged fan-out (None = last group's)
    """

    groups: List[MatrixDefinition] = Field(..., min_length=1)
    fail_fast: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")
