"""Main application configuration model."""

from pydantic import BaseModel, ConfigDict, Field

from pipestep.domain.config.log import LoggingConfig
from pipestep.domain.config.matrix import MatrixConfig
from pipestep.domain.config.retry import RetryConfig


class AppConfig(BaseModel):
    """Main application configuration.

    This is the root configuration model that aggregates all configuration sections.
    Validation is performed at load time to fail fast on configuration errors.

    Attributes:
        retry: Defaults for conditional retry steps
        matrix: Defaults for matrix steps
        logging: Logging configuration
    """

    retry: RetryConfig = Field(default_factory=RetryConfig)
    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        validate_assignment=True,  # Validate on attribute assignment
        extra="forbid",  # Reject unknown fields
        json_schema_extra={
            "example": {
                "retry": {
                    "suppress_failure": True,
                    "retry_budget": 3,
                    "retry_delay_seconds": 60,
                    "use_builtin_failure_signatures": True,
                    "custom_failure_signatures": {"test-pattern": ".*DummyFailurePattern.*"},
                },
                "matrix": {
                    "fail_fast": True,
                    "stage_name_separator": "_",
                    "max_workers": None,
                },
                "logging": {
                    "level": "INFO",
                },
            }
        },
    )
