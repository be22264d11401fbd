"""Conditional retry - retry a task only when its log shows a recoverable failure

The controller holds the retry state on a stable context (this process) and
runs the task on an execution context that may disappear at any time
(spot/preemptible agents). When an attempt fails, only the log written since
that attempt's marker is scanned for failure signatures; the attempt is
retried if a signature matched and retry budget is left.

Flow:
    controller -> allocator.acquire(execution_target) -> task(context)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from tenacity import RetryCallState, Retrying, nap, stop_after_attempt, wait_fixed

from pipestep.domain.config.retry import RetryConfig, RetryStepConfig
from pipestep.domain.config.steps import build_retry_step
from pipestep.domain.errors import PostActionFailure
from pipestep.domain.models.retry_result import RetryAttempt, RetryResult
from pipestep.domain.models.status import RetryState, StageStatus
from pipestep.domain.signatures import FailureSignatureMatcher
from pipestep.infrastructure.execution import ExecutionContext, ExecutionContextAllocator
from pipestep.infrastructure.log_stream import LogStream, retry_window

logger = logging.getLogger(__name__)


class RetryController:
    """Run tasks with conditional retry"""

    def __init__(
        self,
        allocator: ExecutionContextAllocator,
        log_stream: LogStream,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize retry controller

        Args:
            allocator: Allocator of execution contexts
            log_stream: Log stream holding the output of all attempts
            sleep: Function used to wait between attempts (default: tenacity's sleep)
        """
        self.allocator = allocator
        self.log_stream = log_stream
        self.sleep = sleep or nap.sleep

    def run(self, config: RetryStepConfig) -> RetryResult:
        """Run the configured task with conditional retry

        Args:
            config: Retry step configuration

        Returns:
            Result with final state, status and one entry per attempt

        Raises:
            Exception: The last task/infrastructure error, unless
                `suppress_failure` is set
            ConfigurationError: If a failure signature is invalid
        """
        matcher = FailureSignatureMatcher(config.failure_signatures())
        stage_log = self.log_stream.scope(config.stage_name)
        result = RetryResult()

        def _before(retry_state: RetryCallState) -> None:
            tries_left = config.retry_budget - (retry_state.attempt_number - 1)
            marker = config.marker(tries_left)
            # Marker used to differentiate between attempts in the stage logs.
            stage_log.echo(marker)
            result.attempts.append(RetryAttempt(tries_left=tries_left, marker=marker))
            result.state = RetryState.EXECUTING

        def _should_retry(retry_state: RetryCallState) -> bool:
            outcome = retry_state.outcome
            if outcome is None or not outcome.failed:
                return False
            attempt = result.attempts[-1]
            attempt.error = outcome.exception()
            result.state = RetryState.AWAITING_DECISION
            stage_log.echo(f"Caught error on intermediate context: {_describe(attempt.error)}")
            attempt.matched_lines = self._match_attempt_logs(config, matcher, attempt)

            if not attempt.matched_lines:
                logger.info("There are no failure patterns matched")
                return False
            if attempt.tries_left <= 0:
                logger.warning(f"[{config.stage_name}] Failure pattern matched but no tries left")
                return False
            result.state = RetryState.RETRYING
            return True

        def _before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                f"[{config.stage_name}] Attempt {retry_state.attempt_number} failed with a known "
                f"failure pattern. Retrying in {config.retry_delay_seconds}s..."
            )

        retrying = Retrying(
            stop=stop_after_attempt(config.retry_budget + 1),
            wait=wait_fixed(config.retry_delay_seconds),
            retry=_should_retry,
            before=_before,
            before_sleep=_before_sleep,
            sleep=self.sleep,
            reraise=True,
        )

        try:
            retrying(self._attempt, config, result)
        except Exception as e:
            result.error = e
            result.degrade(StageStatus.FAILURE)
            if config.suppress_failure:
                result.state = RetryState.FAILED_SUPPRESSED
                stage_log.echo("An error has been thrown but suppressed and stage status changed to: 'FAILURE'")
                logger.error(f"[{config.stage_name}] Failed after {result.attempt_count} attempt(s): {e}")
                return result
            result.state = RetryState.FAILED_PROPAGATED
            logger.error(f"[{config.stage_name}] Failed after {result.attempt_count} attempt(s): {e}")
            raise

        result.state = RetryState.SUCCEEDED
        logger.info(f"[{config.stage_name}] Succeeded after {result.attempt_count} attempt(s)")
        return result

    def _attempt(self, config: RetryStepConfig, result: RetryResult) -> None:
        """Run one attempt on a freshly acquired execution context"""
        with self.allocator.acquire(config.execution_target, config.stage_name) as context:
            try:
                context.echo("Run steps on the execution context")
                config.task(context)
                self._run_hook("on_success", config.on_success, context, result)
            except Exception as e:
                context.echo(f"Caught error on execution context: {_describe(e)}")
                self._run_hook("on_failure", config.on_failure, context, result)
                raise
            finally:
                self._run_hook("on_always", config.on_always, context, result)

    def _run_hook(
        self,
        name: str,
        hook: Optional[Callable[..., Any]],
        context: ExecutionContext,
        result: RetryResult,
    ) -> None:
        """Run a post action; its errors never override the task outcome"""
        if hook is None:
            return
        context.echo(f"Run {name} section on the execution context")
        try:
            hook(context)
        except Exception as e:
            failure = PostActionFailure(name, e)
            result.post_action_failures.append(failure)
            result.degrade(StageStatus.UNSTABLE)
            context.echo(
                f"An error has been thrown in post action. Stage status changed to: '{StageStatus.UNSTABLE.value}'."
            )
            logger.warning(str(failure))

    def _match_attempt_logs(
        self,
        config: RetryStepConfig,
        matcher: FailureSignatureMatcher,
        attempt: RetryAttempt,
    ) -> list:
        """Scan the log window of `attempt` for failure signatures"""
        logs = self.log_stream.get_log_segment(config.log_scope_filters)
        window = retry_window(logs, attempt.marker)
        logger.debug(f"Current retry logs:\n{window}")
        return matcher.report(window)


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def conditional_retry(
    allocator: ExecutionContextAllocator,
    log_stream: LogStream,
    defaults: Optional[RetryConfig] = None,
    sleep: Optional[Callable[[float], None]] = None,
    **parameters: Any,
) -> RetryResult:
    """Validate `parameters` and run them with a RetryController

    Raises:
        ConfigurationError: If a mandatory parameter is missing or unknown
    """
    config = build_retry_step(defaults, **parameters)
    return RetryController(allocator, log_stream, sleep=sleep).run(config)
