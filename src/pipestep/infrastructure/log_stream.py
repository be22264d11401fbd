"""Append-only log stream shared by concurrently running stages

Each record belongs to a scope (stage or branch name). Retrieval selects
scopes with regex filters, the way the log parser plugin filters branches.
"""

import logging
import re
import threading
from typing import Callable, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def retry_window(text: str, marker: str) -> str:
    """Return the text after the last literal occurrence of `marker`

    Previous attempts are still present in the log, so the marker written
    before the current attempt is used to keep only its output. The marker is
    a literal string, not a pattern. The whole text is returned if the
    marker is absent.
    """
    return text.rpartition(marker)[2]


class ScopedLog:
    """Writer bound to one scope of a LogStream"""

    def __init__(self, stream: "LogStream", scope: str):
        self.stream = stream
        self.scope = scope

    def write(self, text: str) -> None:
        self.stream.write(self.scope, text)

    def echo(self, message: str) -> None:
        """Write `message` to the stream and to the Python log"""
        logger.debug(f"[{self.scope}] {message}")
        self.write(message)


class LogStream:
    """Thread-safe, append-only, in-memory log of (scope, line) records"""

    def __init__(self, listener: Optional[Callable[[str, str], None]] = None):
        """Initialize log stream

        Args:
            listener: Called with (scope, line) for every appended line,
                e.g. to echo the stream to a terminal
        """
        self._records: List[Tuple[str, str]] = []
        self._lock = threading.Lock()
        self.listener = listener

    def write(self, scope: str, text: str) -> None:
        """Append every line of `text` under `scope`"""
        lines = text.splitlines() or [""]
        with self._lock:
            self._records.extend((scope, line) for line in lines)
        if self.listener is not None:
            for line in lines:
                self.listener(scope, line)

    def scope(self, name: str) -> ScopedLog:
        return ScopedLog(self, name)

    def get_log_segment(self, name_filters: Iterable[str]) -> str:
        """Get the accumulated log of every scope matching one of the filters

        Args:
            name_filters: Regexes searched in scope names

        Returns:
            Matching lines in write order, newest at the end
        """
        patterns = [re.compile(f) for f in name_filters]
        with self._lock:
            records = list(self._records)
        lines = [line for scope, line in records if any(p.search(scope) for p in patterns)]
        return "\n".join(lines)

    def scopes(self) -> List[str]:
        """Scope names in order of first appearance"""
        with self._lock:
            return list(dict.fromkeys(scope for scope, _ in self._records))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
