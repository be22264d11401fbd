"""FanOutResult model - aggregate result of a concurrent fan-out"""

from dataclasses import dataclass, field
from typing import Dict, List

from pipestep.domain.models.status import StageStatus


@dataclass
class FanOutResult:
    """Result of running a named set of stages concurrently"""

    statuses: Dict[str, StageStatus] = field(default_factory=dict)
    errors: Dict[str, BaseException] = field(default_factory=dict)
    fail_fast: bool = False

    @property
    def failed(self) -> List[str]:
        """Identifiers of stages that raised"""
        return [name for name, status in self.statuses.items() if status == StageStatus.FAILURE]

    @property
    def aborted(self) -> List[str]:
        """Identifiers of stages never started because of fail-fast"""
        return [name for name, status in self.statuses.items() if status == StageStatus.ABORTED]

    @property
    def status(self) -> StageStatus:
        return StageStatus.worst(*self.statuses.values())

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.aborted
