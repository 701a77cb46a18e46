"""
Build-retry loop for the Oasis ninja build.

Runs the build command, and on failure classifies the transcript:

    MISSING_HOST_TOOL     -> no repair, retry (the tool is a build output)
    REPAIRABLE_SUBMODULE  -> repair the implicated submodule (or all), retry
    UNCLASSIFIED          -> abort immediately

A build command that cannot be started at all also aborts immediately; its
transcript is never classified.

Every failed attempt consumes one unit of the retry budget whatever the
verdict. The loop ends in exactly one of SUCCEEDED, RETRY_EXHAUSTED or
FATAL_ABORTED.
"""

import logging
import sys
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import IO, Callable, List, Optional

from .config import settings
from .failure_classifier import FailureClassifier, FailureVerdict, VerdictKind
from .submodule_repair import SubmoduleRepairer
from .subprocess_streaming import StreamedProcessResult, read_last_n_lines, run_with_streaming

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    RETRY_EXHAUSTED = "retry_exhausted"
    FATAL_ABORTED = "fatal_aborted"


@dataclass
class RetryPolicy:
    """Bounds and pacing for the build-retry loop.

    Attributes:
        max_retries: Failed attempts allowed before giving up
        retry_delay_seconds: Pause before each retry so background fetches settle
        tail_lines: Transcript lines surfaced on final failure
        missing_tool_warn_after: Warn once the same tool is reported missing
            this many times in a row
        missing_tool_abort_after: Abort once the same tool is reported missing
            this many times in a row (None = never, retry until exhausted)
    """

    max_retries: int = field(default_factory=lambda: settings.max_retries)
    retry_delay_seconds: float = field(default_factory=lambda: settings.retry_delay_seconds)
    tail_lines: int = field(default_factory=lambda: settings.transcript_tail_lines)
    missing_tool_warn_after: int = field(default_factory=lambda: settings.missing_tool_warn_after)
    missing_tool_abort_after: Optional[int] = None


@dataclass
class BuildResult:
    """Terminal outcome of the build-retry loop."""

    state: BuildState
    attempts: int
    retries: int
    log_path: Path
    tail: str = ""
    last_verdict: Optional[FailureVerdict] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == BuildState.SUCCEEDED


@dataclass
class _LoopState:
    retries: int = 0
    attempts: int = 0
    missing_tool: Optional[str] = None
    missing_tool_streak: int = 0


Runner = Callable[..., StreamedProcessResult]


class BuildRetryLoop:
    """Drive a flaky build command to completion within a retry budget."""

    def __init__(
        self,
        command: List[str],
        cwd: Path,
        log_path: Path,
        repairer: SubmoduleRepairer,
        env: Optional[dict] = None,
        policy: Optional[RetryPolicy] = None,
        classifier: Optional[FailureClassifier] = None,
        runner: Runner = run_with_streaming,
        sleep: Callable[[float], None] = time.sleep,
        echo: Optional[IO[str]] = sys.stdout,
    ):
        self.command = list(command)
        self.cwd = Path(cwd)
        self.log_path = Path(log_path)
        self.repairer = repairer
        self.env = env
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or FailureClassifier()
        self.runner = runner
        self.sleep = sleep
        self.echo = echo

    def run(self) -> BuildResult:
        """Run the build until it succeeds, aborts, or exhausts the budget."""
        state = _LoopState()
        max_retries = self.policy.max_retries

        while state.retries < max_retries:
            state.attempts += 1
            result = self.runner(
                command=self.command,
                log_path=self.log_path,
                cwd=self.cwd,
                env=self.env,
                tail_lines=self.policy.tail_lines,
                echo=self.echo,
            )

            if result.returncode == 0:
                logger.info("Build completed successfully!")
                return self._result(BuildState.SUCCEEDED, state)

            # The transcript holds our own error text, not build output
            if not result.started:
                logger.error(f"Could not start {self.command[0]}. Check {self.log_path}")
                return self._fail(BuildState.FATAL_ABORTED, state, None, f"could not start {self.command[0]}")

            verdict = self.classifier.classify(self._read_transcript())

            if verdict.kind == VerdictKind.UNCLASSIFIED:
                logger.error(f"Build failed with non-submodule error. Check {self.log_path}")
                return self._fail(BuildState.FATAL_ABORTED, state, verdict, "unrecognized build failure")

            if verdict.kind == VerdictKind.MISSING_HOST_TOOL:
                abort_reason = self._track_missing_tool(state, verdict)
                if abort_reason:
                    logger.error(f"{abort_reason}. Check {self.log_path}")
                    return self._fail(BuildState.FATAL_ABORTED, state, verdict, abort_reason)
                logger.warning(
                    f"Build failed due to missing host tool (should be built now), retrying... "
                    f"(attempt {state.retries + 1}/{max_retries})"
                )
            else:
                state.missing_tool, state.missing_tool_streak = None, 0
                logger.warning(
                    f"Build failed due to submodule issue (attempt {state.retries + 1}/{max_retries})..."
                )
                self._repair(verdict)

            state.retries += 1
            if state.retries < max_retries:
                self.sleep(self.policy.retry_delay_seconds)

        logger.error(f"Build failed after {max_retries} retries. Check {self.log_path}")
        return self._fail(BuildState.RETRY_EXHAUSTED, state, None, f"retry budget of {max_retries} exhausted")

    def _repair(self, verdict: FailureVerdict) -> None:
        if verdict.package_path:
            logger.warning(f"Fixing {verdict.package_path}/src...")
            self.repairer.repair_package(verdict.package_path)
        else:
            logger.warning("Could not identify problematic submodule, reinitializing all...")
            self.repairer.reinit_all()

    def _track_missing_tool(self, state: _LoopState, verdict: FailureVerdict) -> Optional[str]:
        if verdict.tool is not None and verdict.tool == state.missing_tool:
            state.missing_tool_streak += 1
        else:
            state.missing_tool, state.missing_tool_streak = verdict.tool, 1

        streak = state.missing_tool_streak
        tool = verdict.tool or "unknown tool"
        if self.policy.missing_tool_abort_after and streak >= self.policy.missing_tool_abort_after:
            return f"Host tool '{tool}' still missing after {streak} consecutive attempts"
        if streak == self.policy.missing_tool_warn_after:
            logger.warning(
                f"Host tool '{tool}' reported missing {streak} times in a row; "
                f"it may be a genuinely absent dependency rather than a pending build output"
            )
        return None

    def _read_transcript(self) -> str:
        try:
            return self.log_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Could not read build transcript {self.log_path}: {e}")
            return ""

    def _result(
        self, terminal: BuildState, state: _LoopState, verdict: Optional[FailureVerdict] = None, reason: str = ""
    ) -> BuildResult:
        tail = ""
        if terminal != BuildState.SUCCEEDED and self.log_path.exists():
            tail = read_last_n_lines(self.log_path, n=self.policy.tail_lines)
        return BuildResult(
            state=terminal,
            attempts=state.attempts,
            retries=state.retries,
            log_path=self.log_path,
            tail=tail,
            last_verdict=verdict,
            reason=reason,
        )

    def _fail(
        self, terminal: BuildState, state: _LoopState, verdict: Optional[FailureVerdict], reason: str
    ) -> BuildResult:
        result = self._result(terminal, state, verdict, reason)
        if self.echo is not None and result.tail:
            self.echo.write(result.tail)
            if not result.tail.endswith("\n"):
                self.echo.write("\n")
            self.echo.flush()
        return result


def run_with_retry(
    build_command: List[str],
    max_retries: int,
    cwd: Path,
    log_path: Path,
    repairer: SubmoduleRepairer,
    env: Optional[dict] = None,
    **kwargs,
) -> BuildResult:
    """Convenience wrapper: run ``build_command`` under a retry budget of ``max_retries``."""
    policy = replace(kwargs.pop("policy", None) or RetryPolicy(), max_retries=max_retries)
    loop = BuildRetryLoop(build_command, cwd, log_path, repairer, env=env, policy=policy, **kwargs)
    return loop.run()
