"""Error taxonomy shared by the retry and matrix steps"""

from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

if TYPE_CHECKING:
    from pipestep.domain.models.fan_out_result import FanOutResult


class PipestepError(Exception):
    """Base class for all pipestep errors."""

    pass


class ConfigurationError(PipestepError):
    """Configuration validation error."""

    pass


class TaskFailure(PipestepError):
    """The wrapped task failed inside the execution context.

    Attributes:
        returncode: Exit status of the failed command, if known
    """

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class InfrastructureFailure(PipestepError):
    """Execution context could not be acquired or was lost mid-run."""

    pass


class PostActionFailure(PipestepError):
    """A success/failure/always hook raised.

    Never propagated to the caller, only recorded on the result.
    """

    def __init__(self, hook: str, cause: BaseException):
        super().__init__(f"Post action '{hook}' failed: {cause}")
        self.hook = hook
        self.cause = cause


class MatrixFailure(PipestepError):
    """One or more matrix stages failed."""

    def __init__(self, result: "FanOutResult"):
        failed = ", ".join(result.failed) or "none"
        super().__init__(f"Matrix failed. Failed stages: {failed}")
        self.result = result


def format_validation_error(error: ValidationError, header: str = "Configuration validation failed") -> str:
    """Format pydantic validation errors for the user

    Args:
        error: Pydantic validation error
        header: First line of the message

    Returns:
        Multi-line message with one "  - field: message" entry per error
    """
    errors = []
    for item in error.errors():
        field = ".".join(str(x) for x in item["loc"]) or "<root>"
        errors.append(f"  - {field}: {item['msg']}")
    return f"{header}:\n" + "\n".join(errors)
