"""Subprocess output streaming for long-running build commands.

Streams a command's merged stdout/stderr line by line to a log file and to the
operator's console at the same time, then returns the log path, a bounded
tail excerpt and the exit status of the command itself (never of whatever
copies its output).

Usage:
    result = run_with_streaming(
        command=["ninja", "-j8"],
        log_path=Path("oasis-linux/build.log"),
        cwd=Path("oasis-linux/src/oasis"),
    )

    if result.returncode != 0:
        print(f"Failed, see {result.log_path}:\n{result.tail}")
"""

import logging
import subprocess
import sys
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class StreamedProcessResult:
    """Outcome of one streamed command: exit status, transcript location and its tail."""

    returncode: int
    log_path: Path
    tail: str
    command: List[str]
    timeout_occurred: bool = False
    started: bool = True


def read_last_n_lines(file_path: Path, n: int = 50, encoding: str = "utf-8") -> str:
    """Return the final ``n`` lines of a transcript, or a placeholder if it cannot be read."""
    try:
        with open(file_path, "r", encoding=encoding, errors="replace") as f:
            return "".join(deque(f, maxlen=n))
    except OSError as e:
        logger.warning(f"Could not read transcript tail of {file_path}: {e}")
        return f"(Failed to read tail: {e})"


def run_with_streaming(
    command: List[str],
    log_path: Path,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    timeout: Optional[float] = None,
    tail_lines: int = 50,
    echo: Optional[IO[str]] = sys.stdout,
    encoding: str = "utf-8",
) -> StreamedProcessResult:
    """Run subprocess with stdout/stderr teed to a log file and the console.

    The log file is truncated at start and flushed after every line so it can
    be inspected while the command is still running.

    Args:
        command: Argument vector, e.g. ``["ninja", "-j8"]``
        log_path: Transcript file (combined stdout and stderr)
        cwd: Directory to run in
        env: Full environment for the child (None = inherit)
        timeout: Kill the command after this many seconds (None = no timeout)
        tail_lines: How many trailing transcript lines to return
        echo: Stream receiving a live copy of the output (None = silent)
        encoding: Transcript encoding
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Streaming {' '.join(command)} into {log_path} (timeout={timeout})")

    timeout_occurred = threading.Event()
    returncode = -1
    started = True

    with open(log_path, "w", encoding=encoding, errors="replace") as log_file:
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=cwd,
                env=env,
                encoding=encoding,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            logger.error(f"Could not start {command[0]}: {e}")
            started = False
            log_file.write(f"[ERROR] Process execution failed: {e}\n")
            log_file.flush()
        else:
            watchdog = None
            if timeout is not None:

                def _kill() -> None:
                    timeout_occurred.set()
                    process.kill()

                watchdog = threading.Timer(timeout, _kill)
                watchdog.daemon = True
                watchdog.start()

            try:
                for line in process.stdout:
                    log_file.write(line)
                    log_file.flush()
                    if echo is not None:
                        echo.write(line)
                        echo.flush()
                returncode = process.wait()
            finally:
                if watchdog is not None:
                    watchdog.cancel()
                process.stdout.close()

            if timeout_occurred.is_set():
                logger.warning(f"{command[0]} killed after {timeout}s")
                returncode = -1
                log_file.write(f"\n\n[TIMEOUT] Process exceeded {timeout}s timeout and was terminated.\n")
                log_file.flush()

    tail = read_last_n_lines(log_path, n=tail_lines, encoding=encoding)

    logger.debug(f"{command[0]} exited with {returncode}")

    return StreamedProcessResult(
        returncode=returncode,
        log_path=log_path,
        tail=tail,
        command=list(command),
        timeout_occurred=timeout_occurred.is_set(),
        started=started,
    )
