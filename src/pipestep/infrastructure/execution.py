"""Execution contexts and environment bindings

The allocator hands out an ExecutionContext for a label. The local allocator
runs everything in-process on this machine; other allocators (containers,
remote agents) implement the same `acquire` contract.
"""

import logging
import os
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, Mapping, Optional, Protocol

from pipestep.domain.errors import InfrastructureFailure, TaskFailure
from pipestep.infrastructure.log_stream import LogStream, ScopedLog

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Environment where a task's side-effecting steps run"""

    label: str
    log: ScopedLog
    workspace: Path = field(default_factory=Path.cwd)
    env: Mapping[str, str] = field(default_factory=dict)

    def echo(self, message: str) -> None:
        self.log.echo(message)

    def sh(self, command: str) -> str:
        """Run a shell command, streaming its combined output into the log

        Args:
            command: Shell command line

        Returns:
            Combined stdout/stderr output

        Raises:
            TaskFailure: If the command exits with a non-zero status
        """
        logger.debug(f"[{self.label}] sh: {command}")
        output = []
        # Undecodable bytes are replaced, never a failure of the command itself.
        with subprocess.Popen(
            command,
            shell=True,
            cwd=str(self.workspace),
            env={**os.environ, **self.env},
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
        ) as process:
            for line in process.stdout:
                line = line.rstrip("\n")
                output.append(line)
                self.log.write(line)
            returncode = process.wait()
        if returncode != 0:
            raise TaskFailure(f"script returned exit code {returncode}", returncode=returncode)
        return "\n".join(output)


class ExecutionContextAllocator(Protocol):
    """Hands out execution contexts by label, releasing them on scope exit"""

    def acquire(
        self, label: str, scope: str, env: Optional[Mapping[str, str]] = None
    ) -> ContextManager[ExecutionContext]:
        ...


class LocalAllocator:
    """Allocate execution contexts on the local machine"""

    def __init__(
        self,
        log_stream: LogStream,
        labels: Optional[Iterable[str]] = None,
        workspace: Optional[Path] = None,
    ):
        """Initialize local allocator

        Args:
            log_stream: Log stream receiving the output of the contexts
            labels: Labels this allocator can serve (None = any label)
            workspace: Working directory of the contexts (default: current directory)
        """
        self.log_stream = log_stream
        self.labels = set(labels) if labels is not None else None
        self.workspace = workspace

    @contextmanager
    def acquire(
        self, label: str, scope: str, env: Optional[Mapping[str, str]] = None
    ) -> Iterator[ExecutionContext]:
        """Acquire an execution context for `label`

        Raises:
            InfrastructureFailure: If no context can serve the label
        """
        if self.labels is not None and label not in self.labels:
            raise InfrastructureFailure(
                f"No execution context available for label '{label}'. "
                f"Available labels: {sorted(self.labels)}"
            )
        logger.info(f"Acquired execution context '{label}' for {scope}")
        context = ExecutionContext(
            label=label,
            log=self.log_stream.scope(scope),
            workspace=self.workspace or Path.cwd(),
            env=dict(env or {}),
        )
        try:
            yield context
        finally:
            logger.info(f"Released execution context '{label}'")


def with_bindings(bindings: Mapping[str, Any], body: Callable[[Mapping[str, str]], Any]) -> Any:
    """Run `body` with a read-only mapping of bindings

    Nothing is written to the process environment, so sibling stages running
    concurrently never see each other's bindings.
    """
    scoped: Dict[str, str] = {key: str(value) for key, value in bindings.items()}
    return body(MappingProxyType(scoped))
