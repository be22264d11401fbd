"""RetryResult model - represents the outcome of a conditional retry run"""

from dataclasses import dataclass, field
from typing import List, Optional

from pipestep.domain.errors import PostActionFailure
from pipestep.domain.models.status import RetryState, StageStatus


@dataclass
class RetryAttempt:
    """One attempt of a conditional retry run"""

    tries_left: int  # Remaining retry budget when the attempt started
    marker: str  # Log line written before the attempt
    matched_lines: List[str] = field(default_factory=list)  # Window lines matching a signature
    error: Optional[BaseException] = None  # Error raised by the attempt, if any

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class RetryResult:
    """Result of a conditional retry run"""

    state: RetryState = RetryState.STARTING
    status: StageStatus = StageStatus.SUCCESS
    attempts: List[RetryAttempt] = field(default_factory=list)
    error: Optional[BaseException] = None  # Final error (suppressed or propagated)
    post_action_failures: List[PostActionFailure] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def succeeded(self) -> bool:
        return self.state == RetryState.SUCCEEDED

    def degrade(self, status: StageStatus) -> None:
        """Lower the status to `status` unless it is already worse"""
        self.status = StageStatus.worst(self.status, status)
