"""Stage status and retry state enums"""

from enum import Enum


class StageStatus(str, Enum):
    """Observable result of a stage, ordered by severity"""

    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, *statuses: "StageStatus") -> "StageStatus":
        """Return the most severe status (SUCCESS when none given)"""
        return max(statuses, key=lambda s: s.severity, default=cls.SUCCESS)


_SEVERITY = {
    StageStatus.SUCCESS: 0,
    StageStatus.UNSTABLE: 1,
    StageStatus.FAILURE: 2,
    StageStatus.ABORTED: 3,
}


class RetryState(str, Enum):
    """States of a conditional retry run"""

    STARTING = "starting"
    EXECUTING = "executing"
    AWAITING_DECISION = "awaiting_decision"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED_SUPPRESSED = "failed_suppressed"
    FAILED_PROPAGATED = "failed_propagated"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RetryState.SUCCEEDED,
            RetryState.FAILED_SUPPRESSED,
            RetryState.FAILED_PROPAGATED,
        )
