"""Configuration models with Pydantic validation."""

from pipestep.domain.config.app import AppConfig
from pipestep.domain.config.log import LoggingConfig
from pipestep.domain.config.matrix import MatrixConfig, MatrixStepConfig, MultiCombinationMatrixConfig
from pipestep.domain.config.retry import RetryConfig, RetryStepConfig

__all__ = [
    "AppConfig",
    "LoggingConfig",
    "MatrixConfig",
    "MatrixStepConfig",
    "MultiCombinationMatrixConfig",
    "RetryConfig",
    "RetryStepConfig",
]
