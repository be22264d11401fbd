"""Logging configuration model."""

from typing import Literal

from pydantic import BaseModel, ConfigDict


class LoggingConfig(BaseModel):
    """Configuration for logging.

    Attributes:
        level: Root log level
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = ConfigDict(extra="forbid")
