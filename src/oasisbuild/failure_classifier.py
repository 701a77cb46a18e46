"""
Failure classification for ninja build transcripts.

Scans the combined output of a failed build and decides whether the failure
is something the retry loop knows how to recover from:

- MISSING_HOST_TOOL: a host tool produced by the build itself (e.g. zic) was
  invoked before it existed. Retry without repair.
- REPAIRABLE_SUBMODULE: a lazily fetched package submodule is missing, dirty
  or half-rebased. Repair the implicated submodule (or all of them) and retry.
- UNCLASSIFIED: anything else. Abort immediately.

The recognized patterns live in FAILURE_PATTERNS.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)


class VerdictKind(str, Enum):
    """Failure verdict kinds, in classification priority order."""

    MISSING_HOST_TOOL = "missing_host_tool"
    REPAIRABLE_SUBMODULE = "repairable_submodule"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class FailureVerdict:
    """Result of classifying one build transcript."""

    kind: VerdictKind
    package_path: Optional[str] = None  # e.g. "pkg/curl"; REPAIRABLE_SUBMODULE only
    tool: Optional[str] = None  # e.g. "zic"; MISSING_HOST_TOOL only
    matched_line: Optional[str] = None

    @property
    def is_retryable(self) -> bool:
        return self.kind != VerdictKind.UNCLASSIFIED


# (compiled pattern, verdict kind). Checked in order; the first kind with any
# match decides the verdict.
FAILURE_PATTERNS: List[Tuple[Pattern[str], VerdictKind]] = [
    (re.compile(r"^/bin/sh:.*: not found"), VerdictKind.MISSING_HOST_TOOL),
    (re.compile(r"^(?:/bin/)?(?:ba)?sh:.*: command not found"), VerdictKind.MISSING_HOST_TOOL),
    (re.compile(r"No such file or directory"), VerdictKind.REPAIRABLE_SUBMODULE),
    (re.compile(r"Dirty index"), VerdictKind.REPAIRABLE_SUBMODULE),
    (re.compile(r"rebase-apply"), VerdictKind.REPAIRABLE_SUBMODULE),
    (re.compile(r"failed to access"), VerdictKind.REPAIRABLE_SUBMODULE),
    (re.compile(r"FAILED:.*pkg/.*fetch"), VerdictKind.REPAIRABLE_SUBMODULE),
    (re.compile(r"Failed to clone"), VerdictKind.REPAIRABLE_SUBMODULE),
]

# A package directory: the fixed "pkg/" prefix and exactly one path component.
PACKAGE_PATH_RE = re.compile(r"(?<![\w-])pkg/[^/\s:'\"`]+")

FAILED_STEP_RE = re.compile(r"^FAILED:")

# "/bin/sh: 1: zic: not found" / "sh: zic: command not found"
_TOOL_NAME_RE = re.compile(r"^\S*sh:(?:\s*(?:line\s+)?\d+:)?\s*([^:\s]+):\s*(?:command )?not found")


class FailureClassifier:
    """
    Classify ninja build transcripts into retry verdicts.

    Patterns are matched line by line against the unstructured output of the
    many compilers and tools ninja drives.
    """

    def __init__(self, patterns: Optional[List[Tuple[Pattern[str], VerdictKind]]] = None):
        self.patterns = patterns if patterns is not None else FAILURE_PATTERNS

    def classify(self, transcript: str) -> FailureVerdict:
        """
        Classify a build transcript.

        Args:
            transcript: Combined stdout/stderr of the failed build

        Returns:
            FailureVerdict; MISSING_HOST_TOOL takes priority over everything else
        """
        lines = (transcript or "").splitlines()

        tool_lines = self._matching_lines(lines, VerdictKind.MISSING_HOST_TOOL)
        if tool_lines:
            last = tool_lines[-1]
            return FailureVerdict(
                kind=VerdictKind.MISSING_HOST_TOOL,
                tool=self._extract_tool(last),
                matched_line=last,
            )

        error_lines = self._matching_lines(lines, VerdictKind.REPAIRABLE_SUBMODULE)
        if error_lines:
            package_path = self._package_path(error_lines[-1])
            if package_path is None:
                failed_lines = [line for line in lines if FAILED_STEP_RE.match(line)]
                package_path = self._last_package_path(failed_lines)
            return FailureVerdict(
                kind=VerdictKind.REPAIRABLE_SUBMODULE,
                package_path=package_path,
                matched_line=error_lines[-1],
            )

        logger.debug(f"No recognized failure pattern in {len(lines)} transcript lines")
        return FailureVerdict(kind=VerdictKind.UNCLASSIFIED)

    def _matching_lines(self, lines: List[str], kind: VerdictKind) -> List[str]:
        patterns = [pattern for pattern, pattern_kind in self.patterns if pattern_kind == kind]
        return [line for line in lines if any(p.search(line) for p in patterns)]

    @staticmethod
    def _package_path(line: str) -> Optional[str]:
        # Within a line the first package path is the subject
        match = PACKAGE_PATH_RE.search(line)
        return match.group(0) if match else None

    @classmethod
    def _last_package_path(cls, lines: List[str]) -> Optional[str]:
        for line in reversed(lines):
            package_path = cls._package_path(line)
            if package_path:
                return package_path
        return None

    @staticmethod
    def _extract_tool(line: str) -> Optional[str]:
        match = _TOOL_NAME_RE.match(line)
        return match.group(1) if match else None


_default_classifier = FailureClassifier()


def classify(transcript: str) -> FailureVerdict:
    """Classify a transcript with the default pattern table."""
    return _default_classifier.classify(transcript)
