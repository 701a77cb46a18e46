"""
Git CLI adapter.

Thin wrapper over the git command line used by the pipeline and the
submodule repair unit. Every invocation carries low-speed limits so a stalled
HTTP transfer aborts instead of hanging the build.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from .config import settings

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def git_environment(base: Optional[dict] = None) -> dict:
    """Environment for git subprocesses: low-speed abort, no credential prompts."""
    env = dict(os.environ if base is None else base)
    env["GIT_HTTP_LOW_SPEED_LIMIT"] = str(settings.git_low_speed_limit)
    env["GIT_HTTP_LOW_SPEED_TIME"] = str(settings.git_low_speed_time)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


class LocalGitCliAdapter:
    """Local git CLI implementation using subprocess."""

    def __init__(self, git_executable: str = "git"):
        self.git_executable = git_executable

    def _run_git(
        self, args: List[str], cwd: Optional[PathLike] = None, check: bool = True, capture_output: bool = True
    ) -> subprocess.CompletedProcess:
        """
        Run git command.

        Args:
            args: Git command arguments (e.g., ['status', '--porcelain'])
            cwd: Working directory
            check: Raise CalledProcessError on non-zero exit
            capture_output: Capture stdout/stderr

        Returns:
            CompletedProcess result
        """
        cmd = [self.git_executable] + args
        logger.debug(f"git {' '.join(args)} (cwd={cwd})")
        return subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            check=check,
            capture_output=capture_output,
            text=True,
            env=git_environment(),
        )

    def clone(self, url: str, dest: PathLike, bare: bool = False, check: bool = True) -> subprocess.CompletedProcess:
        args = ["clone"]
        if bare:
            args.append("--bare")
        return self._run_git(args + [url, str(dest)], check=check, capture_output=False)

    def pull(self, repo_path: PathLike) -> bool:
        """Fast-forward an existing checkout. Returns False on failure."""
        result = self._run_git(["pull"], cwd=repo_path, check=False, capture_output=False)
        return result.returncode == 0

    def set_config(self, repo_path: PathLike, key: str, value: str) -> None:
        self._run_git(["config", "--local", key, value], cwd=repo_path)

    def submodule_deinit(self, repo_path: PathLike, path: str) -> subprocess.CompletedProcess:
        return self._run_git(["submodule", "deinit", "-f", path], cwd=repo_path, check=False)

    def submodule_update(
        self, repo_path: PathLike, path: Optional[str] = None, recursive: bool = False
    ) -> subprocess.CompletedProcess:
        args = ["submodule", "update", "--init"]
        if recursive:
            args.append("--recursive")
        if path is not None:
            args.append(path)
        return self._run_git(args, cwd=repo_path, check=False)

    def archive_into(self, git_dir: PathLike, treeish: str, dest: PathLike) -> None:
        """Extract ``treeish`` from a (bare) repository into ``dest``.

        Equivalent to ``git --git-dir=<git_dir> archive <treeish> | tar x``,
        with the exit status of both ends checked.

        Raises:
            subprocess.CalledProcessError: If either git or tar fails
        """
        archive_cmd = [self.git_executable, f"--git-dir={git_dir}", "archive", treeish]
        tar_cmd = ["tar", "x"]
        archive = subprocess.Popen(archive_cmd, stdout=subprocess.PIPE, env=git_environment())
        try:
            tar = subprocess.run(tar_cmd, stdin=archive.stdout, cwd=str(dest))
        finally:
            archive.stdout.close()
        archive_status = archive.wait()
        if archive_status != 0:
            raise subprocess.CalledProcessError(archive_status, archive_cmd)
        if tar.returncode != 0:
            raise subprocess.CalledProcessError(tar.returncode, tar_cmd)


def get_git_adapter() -> LocalGitCliAdapter:
    """Get git adapter instance."""
    return LocalGitCliAdapter()
