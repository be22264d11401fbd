"""MatrixCombination model - one selection of a value per axis"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

MATRIX_STAGE_NAME = "MATRIX_STAGE_NAME"
MATRIX_STAGE_VARS = "MATRIX_STAGE_VARS"


@dataclass(frozen=True)
class MatrixCombination:
    """Mapping from axis name to the selected value, in axis declaration order"""

    values: Dict[str, Any]

    @property
    def stage_vars(self) -> str:
        """Comma joined key=value pairs, e.g. "PLATFORM=linux, BROWSER=chrome\""""
        return ", ".join(f"{key}={value}" for key, value in self.values.items())

    @property
    def identifier(self) -> str:
        """Stage label and key in the stages mapping"""
        return self.stage_vars

    def stage_name(self, separator: str = "_") -> str:
        """Separator joined bare values, e.g. "linux_chrome\""""
        return separator.join(str(value) for value in self.values.values())

    def env(self, separator: str = "_", extra_vars: Optional[Mapping[str, Any]] = None) -> Dict[str, str]:
        """Build the variables bound for this combination

        Args:
            separator: Separator used for MATRIX_STAGE_NAME
            extra_vars: Additional variables injected into every combination

        Returns:
            Ordered mapping: axis values, MATRIX_STAGE_VARS, MATRIX_STAGE_NAME, extra vars
        """
        env = {key: str(value) for key, value in self.values.items()}
        env[MATRIX_STAGE_VARS] = self.stage_vars
        env[MATRIX_STAGE_NAME] = self.stage_name(separator)
        for key, value in (extra_vars or {}).items():
            env[key] = str(value)
        return env


@dataclass(frozen=True)
class StageContext:
    """Bindings handed explicitly to a matrix action"""

    identifier: str
    combination: MatrixCombination
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def stage_name(self) -> str:
        return self.env.get(MATRIX_STAGE_NAME, "")

    @property
    def stage_vars(self) -> str:
        return self.env.get(MATRIX_STAGE_VARS, "")

    def get(self, name: str, default: Any = None) -> Any:
        return self.env.get(name, default)

    def __getitem__(self, name: str) -> str:
        return self.env[name]
