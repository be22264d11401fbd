"""Failure signatures - named regular expressions for recoverable failures

A failed attempt is retried only if one line of its log window matches one of
the signatures. Signatures are OR-combined into a single alternation and
matched line by line.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional

from pipestep.domain.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Key = failure reason; Value = the regex to identify it.
BUILTIN_FAILURE_SIGNATURES: Dict[str, str] = {
    "connection-reset": r"^.*:? Connection reset$",
    "timeout": r".*Error: timeout of .* exceeded.*",
    "jnlp-client-disconnected-1": (
        r"^.*Caused: java.io.IOException: Backing channel 'JNLP4-connect connection from .*' is disconnected.$"
    ),
    "jnlp-client-disconnected-2": (
        r"^.*Remote call on JNLP4-connect connection from .* failed. "
        r"The channel is closing down or has closed down$"
    ),
    "jnlp-client-disconnected-3": r"java.nio.channels.ClosedChannelException",
    "jnlp-client-disconnected-4": r"hudson.AbortException: missing workspace",
    "jnlp-request-aborted-1": r".*Caused: java.io.IOException: remote file operation failed.*JNLP4-connect connection from.*",
    "jnlp-request-aborted-2": r".*Caused: hudson.remoting.RequestAbortedException.*",
    "java-oom": r".*java.lang.OutOfMemoryError.*",
    "git-clone-failure": r"^.*ERROR: Error cloning remote repo 'origin'$",
}


def merge_signatures(
    use_builtin: bool = True,
    custom: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Merge builtin and custom signatures

    Custom entries override builtin entries of the same name (keeping their
    position) and new names are appended.

    Args:
        use_builtin: Whether to include the builtin signatures
        custom: Caller supplied signatures

    Returns:
        Ordered mapping of signature name to pattern
    """
    merged = dict(BUILTIN_FAILURE_SIGNATURES) if use_builtin else {}
    merged.update(custom or {})
    return merged


def pattern_error(name: str, pattern: str, kind: str = "failure signature") -> Optional[str]:
    """Describe why `pattern` does not compile, or None if it does"""
    try:
        re.compile(pattern)
    except re.error as e:
        return f"Invalid {kind} '{name}': {pattern!r} ({e})"
    return None


def validate_pattern(name: str, pattern: str) -> None:
    """Raise ConfigurationError if `pattern` does not compile"""
    error = pattern_error(name, pattern)
    if error is not None:
        raise ConfigurationError(error)


class FailureSignatureMatcher:
    """Match text against a set of failure signatures"""

    def __init__(self, signatures: Mapping[str, str]):
        """Initialize matcher

        Args:
            signatures: Ordered mapping of signature name to pattern

        Raises:
            ConfigurationError: If a pattern does not compile
        """
        self.signatures = dict(signatures)
        self._compiled = {}
        for name, pattern in self.signatures.items():
            validate_pattern(name, pattern)
            self._compiled[name] = re.compile(pattern)

        if self.signatures:
            self.regex: Optional[re.Pattern] = re.compile(
                "(?:" + "|".join(self.signatures.values()) + ")"
            )
        else:
            self.regex = None

    def matched_lines(self, text: str) -> List[str]:
        """Return every line of `text` matching one of the signatures

        Matching is done line by line, never across lines.
        """
        if self.regex is None:
            return []
        return [line for line in text.split("\n") if self.regex.search(line)]

    def matches(self, text: str) -> bool:
        return bool(self.matched_lines(text))

    def signature_for(self, line: str) -> Optional[str]:
        """Name of the first signature (declaration order) matching `line`"""
        for name, compiled in self._compiled.items():
            if compiled.search(line):
                return name
        return None

    def report(self, text: str) -> List[str]:
        """Match `text` and log the matched lines

        Returns:
            Matched lines
        """
        logger.info("Start matching failure patterns")
        matched = self.matched_lines(text)
        logger.info("Finished matching failure patterns")
        if matched:
            formatted = "\n\t- " + "\n\t- ".join(
                f"{line} [{self.signature_for(line)}]" for line in matched
            )
        else:
            formatted = "There are no matched patterns"
        logger.info(f"Matched lines: {formatted}")
        return matched
