"""Concurrent fan-out over named units of work"""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Mapping, Optional

from pipestep.domain.models.fan_out_result import FanOutResult
from pipestep.domain.models.status import StageStatus

logger = logging.getLogger(__name__)


def run_all(
    stages: Mapping[str, Callable[[], Any]],
    fail_fast: bool = False,
    max_workers: Optional[int] = None,
) -> FanOutResult:
    """Run every stage concurrently and join on completion

    With `fail_fast`, the first failure stops the scheduling of stages that
    have not started yet; those are reported as ABORTED. Stages already
    running are not interrupted. Stage errors are recorded, never raised.

    Args:
        stages: Stage name -> unit of work
        fail_fast: Abort not-yet-started stages after the first failure
        max_workers: Maximum number of stages running at once

    Returns:
        Aggregate result with a status per stage
    """
    result = FanOutResult(fail_fast=fail_fast)
    if not stages:
        return result

    failed = threading.Event()
    lock = threading.Lock()

    def _run(name: str, stage: Callable[[], Any]) -> None:
        if fail_fast and failed.is_set():
            with lock:
                result.statuses[name] = StageStatus.ABORTED
            logger.warning(f"Stage '{name}' aborted: a sibling stage failed (fail fast)")
            return
        logger.info(f"Starting stage '{name}'")
        try:
            stage()
        except BaseException as e:
            # SystemExit or KeyboardInterrupt from a stage still fails the stage.
            failed.set()
            with lock:
                result.statuses[name] = StageStatus.FAILURE
                result.errors[name] = e
            logger.error(f"Stage '{name}' failed: {e}")
            raise
        with lock:
            result.statuses[name] = StageStatus.SUCCESS
        logger.info(f"Stage '{name}' succeeded")

    workers = max_workers or len(stages)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as executor:
        futures: Dict[Future, str] = {
            executor.submit(_run, name, stage): name for name, stage in stages.items()
        }
        if fail_fast:
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            if pending and failed.is_set():
                for future in pending:
                    if future.cancel():
                        name = futures[future]
                        with lock:
                            result.statuses[name] = StageStatus.ABORTED
                        logger.warning(f"Stage '{name}' aborted: a sibling stage failed (fail fast)")
        wait(futures)

    # Keep the declaration order of the stages in the result.
    result.statuses = {name: result.statuses[name] for name in stages if name in result.statuses}
    return result
