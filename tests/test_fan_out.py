"""Tests for the concurrent fan-out primitive"""

import sys
import threading

from pipestep.domain.models.status import StageStatus
from pipestep.infrastructure.fan_out import run_all


def _fail():
    raise RuntimeError("boom")


class TestRunAll:
    """Tests for run_all"""

    def test_all_stages_succeed(self):
        """Test statuses are reported in declaration order"""
        ran = []
        lock = threading.Lock()

        def stage(name):
            def _run():
                with lock:
                    ran.append(name)

            return _run

        result = run_all({name: stage(name) for name in ["c", "a", "b"]})

        assert list(result.statuses) == ["c", "a", "b"]
        assert all(status == StageStatus.SUCCESS for status in result.statuses.values())
        assert sorted(ran) == ["a", "b", "c"]
        assert result.succeeded
        assert result.status == StageStatus.SUCCESS

    def test_failure_without_fail_fast_runs_everything(self):
        """Test sibling stages still run when fail_fast is off"""
        result = run_all({"a": _fail, "b": lambda: None, "c": lambda: None}, fail_fast=False, max_workers=1)

        assert result.statuses == {
            "a": StageStatus.FAILURE,
            "b": StageStatus.SUCCESS,
            "c": StageStatus.SUCCESS,
        }
        assert result.failed == ["a"]
        assert isinstance(result.errors["a"], RuntimeError)
        assert result.status == StageStatus.FAILURE

    def test_fail_fast_aborts_pending_stages(self):
        """Test stages not yet started are aborted after the first failure"""
        ran = []
        result = run_all(
            {"a": _fail, "b": lambda: ran.append("b"), "c": lambda: ran.append("c")},
            fail_fast=True,
            max_workers=1,
        )

        assert result.statuses["a"] == StageStatus.FAILURE
        assert result.aborted == ["b", "c"]
        assert ran == []
        assert not result.succeeded
        assert result.fail_fast

    def test_running_stage_is_not_interrupted(self):
        """Test a stage already running completes after a sibling failed"""
        started = threading.Event()
        finished = []

        def slow():
            started.set()
            threading.Event().wait(0.2)
            finished.append("slow")

        def failing():
            started.wait(timeout=5)
            raise RuntimeError("boom")

        result = run_all({"slow": slow, "failing": failing}, fail_fast=True)

        assert finished == ["slow"]
        assert result.statuses["slow"] == StageStatus.SUCCESS
        assert result.statuses["failing"] == StageStatus.FAILURE

    def test_empty_stages(self):
        """Test an empty fan-out succeeds immediately"""
        result = run_all({})
        assert result.statuses == {}
        assert result.succeeded

    def test_system_exit_fails_stage(self):
        """Test a stage calling sys.exit is reported as failed and triggers fail fast"""
        ran = []
        result = run_all(
            {"a": lambda: sys.exit(3), "b": lambda: ran.append("b")},
            fail_fast=True,
            max_workers=1,
        )

        assert result.statuses == {"a": StageStatus.FAILURE, "b": StageStatus.ABORTED}
        assert result.failed == ["a"]
        assert isinstance(result.errors["a"], SystemExit)
        assert ran == []
