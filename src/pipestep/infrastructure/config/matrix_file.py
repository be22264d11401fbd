"""Loader for matrix definition files

A file holds either a single matrix (`axes` as a mapping), several axes
combinations sharing one command (`axes` as a list), or heterogeneous groups
(`groups`)::

    groups:
      - axes: {PLATFORM: [windows], BROWSER: [edge, safari]}
        command: echo windows $MATRIX_STAGE_NAME
      - axes: {PLATFORM: [linux, mac], BROWSER: [chrome, firefox]}
        command: echo unix $MATRIX_STAGE_NAME
"""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from pipestep.domain.config.matrix_file import MatrixDefinition, MatrixDocument
from pipestep.domain.errors import ConfigurationError, format_validation_error

logger = logging.getLogger(__name__)


def load_matrix_file(path: Path) -> MatrixDocument:
    """Load and validate a matrix definition file

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load matrix file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Matrix file {path} must contain a mapping")

    try:
        if "groups" in data:
            document = MatrixDocument(**data)
        else:
            document = MatrixDocument(groups=[MatrixDefinition(**data)])
    except ValidationError as e:
        raise ConfigurationError(
            format_validation_error(e, header=f"Invalid matrix file {path}")
        ) from e

    logger.info(f"Loaded {len(document.groups)} matrix group(s) from {path}")
    return document
