"""Configuration manager for loading and validating .pipestep.yml"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from pipestep.domain.config import (
    AppConfig,
    LoggingConfig,
    MatrixConfig,
    MatrixStepConfig,
    MultiCombinationMatrixConfig,
    RetryConfig,
    RetryStepConfig,
)
from pipestep.domain.config.steps import build_matrix_step, build_multi_combination_step, build_retry_step
from pipestep.domain.errors import ConfigurationError, format_validation_error

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".pipestep.yml"

_TRUE_VALUES = ("1", "true", "yes", "on")


class ConfigManager:
    """Manages configuration from .pipestep.yml and environment variables

    Loads configuration with validation using Pydantic models. Configuration priority:
    1. Default values (defined in Pydantic models)
    2. .pipestep.yml file (searched from current directory)
    3. Environment variables (PIPESTEP_*)
    4. Step parameters / CLI arguments
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize config manager

        Args:
            config_path: Path to .pipestep.yml (searches from current dir if None)

        Raises:
            ConfigurationError: If configuration validation fails
        """
        if isinstance(config_path, str):
            config_path = Path(config_path)
        self.config_path = config_path or self._find_config_file()
        try:
            self.config: AppConfig = self._load_config()
        except ValidationError as e:
            raise ConfigurationError(format_validation_error(e)) from e

    def _find_config_file(self) -> Optional[Path]:
        """Find .pipestep.yml starting from current directory

        Returns:
            Path to config file or None if not found
        """
        current = Path.cwd()
        for parent in [current] + list(current.parents):
            config_file = parent / CONFIG_FILE_NAME
            if config_file.exists():
                logger.info(f"Found config file: {config_file}")
                return config_file
        logger.debug(f"No {CONFIG_FILE_NAME} found, using defaults")
        return None

    def _load_config(self) -> AppConfig:
        """Load configuration from file and validate with Pydantic

        Raises:
            ValidationError: If configuration is invalid
        """
        config_dict: Dict[str, Any] = copy.deepcopy(AppConfig().model_dump())

        if self.config_path and self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {self.config_path}: {e}")
                logger.info("Using default configuration")
            else:
                if not isinstance(file_config, dict):
                    raise ConfigurationError(
                        f"Configuration file {self.config_path} must contain a mapping"
                    )
                config_dict = self._merge_config(config_dict, file_config)
                logger.info(f"Loaded configuration from {self.config_path}")

        config_dict = self._apply_env_overrides(config_dict)
        return AppConfig(**config_dict)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries"""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides

        Values are left as strings; Pydantic converts and validates them.
        """
        if os.getenv("PIPESTEP_RETRY_BUDGET"):
            config["retry"]["retry_budget"] = os.getenv("PIPESTEP_RETRY_BUDGET")

        if os.getenv("PIPESTEP_RETRY_DELAY"):
            config["retry"]["retry_delay_seconds"] = os.getenv("PIPESTEP_RETRY_DELAY")

        if os.getenv("PIPESTEP_SUPPRESS_FAILURE"):
            config["retry"]["suppress_failure"] = (
                os.getenv("PIPESTEP_SUPPRESS_FAILURE").lower() in _TRUE_VALUES
            )

        if os.getenv("PIPESTEP_FAIL_FAST"):
            config["matrix"]["fail_fast"] = os.getenv("PIPESTEP_FAIL_FAST").lower() in _TRUE_VALUES

        if os.getenv("PIPESTEP_LOG_LEVEL"):
            config["logging"]["level"] = os.getenv("PIPESTEP_LOG_LEVEL").upper()

        return config

    def get_retry_config(self) -> RetryConfig:
        """Get retry defaults

        Returns:
            Retry configuration model
        """
        return self.config.retry

    def get_matrix_config(self) -> MatrixConfig:
        """Get matrix defaults

        Returns:
            Matrix configuration model
        """
        return self.config.matrix

    def get_logging_config(self) -> LoggingConfig:
        return self.config.logging

    def build_retry_step(self, **parameters: Any) -> RetryStepConfig:
        """Build a retry step from file defaults and `parameters`

        Raises:
            ConfigurationError: If a mandatory parameter is missing or unknown
        """
        return build_retry_step(self.config.retry, **parameters)

    def build_matrix_step(self, **parameters: Any) -> MatrixStepConfig:
        """Build a matrix step from file defaults and `parameters`

        Raises:
            ConfigurationError: If a mandatory parameter is missing or unknown
        """
        return build_matrix_step(self.config.matrix, **parameters)

    def build_multi_combination_step(self, **parameters: Any) -> MultiCombinationMatrixConfig:
        return build_multi_combination_step(self.config.matrix, **parameters)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (supports dot notation)

        Args:
            key: Configuration key (e.g., "retry.retry_budget" or "retry")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value = self.config.model_dump()
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value
