"""Retry configuration models."""

import re
from typing import Any, Callable, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from pipestep.domain.signatures import merge_signatures, pattern_error


def _check_patterns(patterns: Dict[str, str], kind: str = "failure signature") -> Dict[str, str]:
    for name, pattern in patterns.items():
        error = pattern_error(name, pattern, kind)
        if error is not None:
            raise ValueError(error)
    return patterns


class RetryConfig(BaseModel):
    """Defaults for conditional retry steps (the `retry` section of .pipestep.yml).

    Attributes:
        suppress_failure: Record a final failure as status instead of raising
        retry_budget: Additional attempts allowed after the first one
        retry_delay_seconds: Pause before each retry
        use_builtin_failure_signatures: Include the builtin signature set
        custom_failure_signatures: Extra signatures (name -> regex)
    """

    suppress_failure: bool = True
    retry_budget: int = Field(3, ge=0)
    retry_delay_seconds: float = Field(60.0, ge=0.0)
    use_builtin_failure_signatures: bool = True
    custom_failure_signatures: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("custom_failure_signatures")
    @classmethod
    def _patterns_compile(cls, value: Dict[str, str]) -> Dict[str, str]:
        return _check_patterns(value)


class RetryStepConfig(BaseModel):
    """Parameters of one conditional retry step.

    Field names follow Python conventions; the Jenkins step parameter names
    (agentLabel, retryCount, runSteps, ...) are accepted as aliases.

    Attributes:
        execution_target: Label of the execution context running the task
        stage_name: Identifier of the retry unit, prefixes the log marker
        suppress_failure: Record a final failure as status instead of raising
        retry_budget: Additional attempts allowed after the first one
        retry_delay_seconds: Pause before each retry
        log_scope_filters: Regexes selecting the log scopes of this unit
            (default: [stage_name])
        use_builtin_failure_signatures: Include the builtin signature set
        custom_failure_signatures: Extra signatures (name -> regex)
        task: Unit of work, called with the execution context
        on_success: Hook run after the task succeeded
        on_failure: Hook run after the task failed
        on_always: Hook run after the task in all cases
    """

    execution_target: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("execution_target", "agentLabel")
    )
    stage_name: str = Field("retry", min_length=1)
    suppress_failure: bool = Field(
        True, validation_alias=AliasChoices("suppress_failure", "suppressErrors")
    )
    retry_budget: int = Field(3, ge=0, validation_alias=AliasChoices("retry_budget", "retryCount"))
    retry_delay_seconds: float = Field(
        60.0, ge=0.0, validation_alias=AliasChoices("retry_delay_seconds", "retryDelay")
    )
    log_scope_filters: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices("log_scope_filters", "stageNameFilterPatterns")
    )
    use_builtin_failure_signatures: bool = Field(
        True,
        validation_alias=AliasChoices("use_builtin_failure_signatures", "useBuiltinFailurePatterns"),
    )
    custom_failure_signatures: Dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("custom_failure_signatures", "customFailurePatterns"),
    )
    task: Callable[..., Any] = Field(..., validation_alias=AliasChoices("task", "runSteps"))
    on_success: Optional[Callable[..., Any]] = Field(
        None, validation_alias=AliasChoices("on_success", "postSuccess")
    )
    on_failure: Optional[Callable[..., Any]] = Field(
        None, validation_alias=AliasChoices("on_failure", "postFailure")
    )
    on_always: Optional[Callable[..., Any]] = Field(
        None, validation_alias=AliasChoices("on_always", "postAlways")
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("custom_failure_signatures")
    @classmethod
    def _patterns_compile(cls, value: Dict[str, str]) -> Dict[str, str]:
        return _check_patterns(value)

    @field_validator("log_scope_filters")
    @classmethod
    def _filters_compile(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        if not value:
            raise ValueError("at least one log scope filter is required")
        _check_patterns({f"filter[{i}]": f for i, f in enumerate(value)}, "log scope filter")
        return value

    @model_validator(mode="after")
    def _default_log_scope(self) -> "RetryStepConfig":
        if self.log_scope_filters is None:
            # Scope names are matched as regexes, so the stage name is escaped.
            self.log_scope_filters = [f"^{re.escape(self.stage_name)}$"]
        return self

    def marker(self, tries_left: int) -> str:
        """Log line separating one attempt's output from the previous ones"""
        return f"[{self.stage_name}] Tries left {tries_left}"

    def failure_signatures(self) -> Dict[str, str]:
        return merge_signatures(self.use_builtin_failure_signatures, self.custom_failure_signatures)
