"""Matrix configuration models."""

from typing import Any, Callable, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Axes = Dict[str, List[Any]]


def _check_axes(axes: Axes) -> Axes:
    if not axes:
        raise ValueError("at least one axis is required")
    for name, values in axes.items():
        if not values:
            raise ValueError(f"axis '{name}' must have at least one value")
    return axes


class MatrixConfig(BaseModel):
    """Defaults for matrix steps (the `matrix` section of .pipestep.yml).

    Attributes:
        fail_fast: Stop scheduling stages after the first failure
        stage_name_separator: Separator used in MATRIX_STAGE_NAME
        max_workers: Upper bound of concurrently running stages (None = pool default)
    """

    fail_fast: bool = True
    stage_name_separator: str = "_"
    max_workers: Optional[int] = Field(None, gt=0)

    model_config = ConfigDict(extra="forbid")


class _MatrixStepBase(BaseModel):
    actions: Callable[..., Any]
    fail_fast: bool = Field(True, validation_alias=AliasChoices("fail_fast", "failFast"))
    stage_name_separator: str = Field(
        "_", validation_alias=AliasChoices("stage_name_separator", "stageNameSeparator")
    )
    extra_vars: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("extra_vars", "extraVars")
    )
    return_stages: bool = Field(
        False, validation_alias=AliasChoices("return_stages", "returnStages")
    )

    model_config = ConfigDict(extra="forbid")


class MatrixStepConfig(_MatrixStepBase):
    """Parameters of one dynamic matrix step.

    Attributes:
        axes: Axis name -> ordered candidate values (at least one axis, one value each)
        actions: Stage body, called with the StageContext of a combination
        fail_fast: Stop scheduling stages after the first failure
        stage_name_separator: Separator used in MATRIX_STAGE_NAME
        extra_vars: Variables injected into every combination
        return_stages: Return the stages instead of running them
    """

    axes: Axes

    @field_validator("axes")
    @classmethod
    def _axes_not_empty(cls, value: Axes) -> Axes:
        return _check_axes(value)


class MultiCombinationMatrixConfig(_MatrixStepBase):
    """Dynamic matrix with several independent axes mappings sharing one action."""

    axes: List[Axes]

    @field_validator("axes")
    @classmethod
    def _combinations_not_empty(cls, value: List[Axes]) -> List[Axes]:
        if not value:
            raise ValueError("at least one axes combination is required")
        for axes in value:
            _check_axes(axes)
        return value

    def split(self) -> List[MatrixStepConfig]:
        """One single-matrix config per axes mapping, in order"""
        return [
            MatrixStepConfig(
                axes=axes,
                actions=self.actions,
                fail_fast=self.fail_fast,
                stage_name_separator=self.stage_name_separator,
                extra_vars=self.extra_vars,
                return_stages=True,
            )
            for axes in self.axes
        ]
