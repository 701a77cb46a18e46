"""
Best-effort repair of Oasis package submodules.

Oasis fetches each package's sources lazily as a git submodule under
``pkg/<name>/src``. Those fetches race with the ninja graph and can leave a
submodule missing, dirty or stuck mid-rebase. Repair is deliberately narrow
(one submodule, not recursive) and idempotent, and never raises: every step
runs regardless of the previous step's outcome and failures are only logged.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Iterable, Optional

from .config import settings
from .git_adapter import LocalGitCliAdapter

logger = logging.getLogger(__name__)

# Packages ninja tends to compile before their fetch step has completed.
CRITICAL_SUBMODULES = [
    "pkg/bearssl/src",
    "pkg/libtls-bearssl/src",
    "pkg/libfido2/src",
    "pkg/openssh/src",
    "pkg/b3sum/src",
    "pkg/hotplugd/src",
    "pkg/rc/src",
    "pkg/pigz/src",
    "pkg/sdhcp/src",
    "pkg/syslogd/src",
    "pkg/ubase/src",
    "pkg/sbase/src",
    "pkg/sinit/src",
    "pkg/perp/src",
    "pkg/oksh/src",
    "pkg/vis/src",
    "pkg/samurai/src",
    "pkg/curl/src",
    "pkg/git/src",
    "pkg/mandoc/src",
    "pkg/less/src",
    "pkg/file/src",
    "pkg/libcbor/src",
    "pkg/e2fsprogs/src",
    "pkg/util-linux/src",
    "pkg/iproute2/src",
    "pkg/iptables/src",
    "pkg/zlib/src",
    "pkg/awk/src",
    "pkg/pax/src",
    "pkg/luaposix/src",
    "pkg/lua/src",
    # desktop set
    "pkg/swc/src",
    "pkg/velox/src",
    "pkg/st/src",
    "pkg/dmenu/src",
    "pkg/wld/src",
    "pkg/libdrm/src",
    "pkg/pixman/src",
    "pkg/libinput/src",
    "pkg/libxkbcommon/src",
    "pkg/fontconfig/src",
    "pkg/freetype/src",
    "pkg/expat/src",
    "pkg/libffi/src",
    "pkg/libevdev/src",
    "pkg/libpng/src",
]


class MirrorSource:
    """Known-good clone source for a package whose upstream host is unreliable."""

    def __init__(self, url: str, probe_file: str):
        self.url = url
        self.probe_file = probe_file

    def __repr__(self) -> str:
        return f"MirrorSource(url={self.url!r}, probe_file={self.probe_file!r})"


def default_mirrors() -> Dict[str, MirrorSource]:
    return {settings.mirror_package: MirrorSource(settings.mirror_url, settings.mirror_probe_file)}


def submodule_for(package_path: str) -> str:
    """Map a package directory (``pkg/curl``) to its source submodule (``pkg/curl/src``)."""
    package_path = package_path.rstrip("/")
    if package_path.endswith("/src"):
        return package_path
    return f"{package_path}/src"


class SubmoduleRepairer:
    """Reset and re-fetch package submodules inside an Oasis checkout."""

    def __init__(
        self,
        repo_path: Path,
        git: Optional[LocalGitCliAdapter] = None,
        mirrors: Optional[Dict[str, MirrorSource]] = None,
    ):
        self.repo_path = Path(repo_path)
        self.git = git or LocalGitCliAdapter()
        self.mirrors = default_mirrors() if mirrors is None else mirrors

    def repair(self, path: str) -> None:
        """
        Reset and re-fetch a single submodule.

        Args:
            path: Submodule path relative to the checkout (``pkg/curl/src``)
        """
        logger.info(f"  Reinitializing {path}...")
        self._attempt(f"clear rebase state of {path}", self._clear_rebase_state, path)
        self._attempt(f"deinit {path}", self.git.submodule_deinit, self.repo_path, path)
        self._attempt(f"update {path}", self.git.submodule_update, self.repo_path, path)

    def repair_package(self, package_path: str) -> None:
        """Repair the source submodule of a package (``pkg/curl``).

        Packages with a configured mirror also get the mirror fallback.
        """
        package_path = package_path.rstrip("/")
        if package_path.endswith("/src"):
            package_path = package_path[: -len("/src")]
        self.repair(submodule_for(package_path))
        if package_path in self.mirrors:
            self.clone_from_mirror(package_path)

    def reinit_all(self) -> None:
        """Initialize every submodule recursively. Used when no package could be identified."""
        self._attempt(
            "recursive submodule update",
            self.git.submodule_update,
            self.repo_path,
            None,
            True,
        )

    def clone_from_mirror(self, package_path: str) -> bool:
        """
        Replace a package's sources with a clone from its mirror.

        On success a ``fetch`` sentinel is touched in the package directory so
        the ninja fetch step treats the sources as already present.

        Returns:
            True if the package sources are present afterwards
        """
        mirror = self.mirrors.get(package_path)
        package_dir = self.repo_path / package_path
        if mirror is None or not package_dir.is_dir():
            return False

        src_dir = package_dir / "src"
        probe = src_dir / mirror.probe_file
        if probe.is_file():
            return True

        logger.warning(f"Cloning {package_path} from mirror {mirror.url}...")
        shutil.rmtree(src_dir, ignore_errors=True)
        self._attempt(f"mirror clone of {package_path}", self.git.clone, mirror.url, src_dir, False, False)
        if probe.is_file():
            (package_dir / "fetch").touch()
            return True
        logger.warning(f"Mirror clone of {package_path} did not produce {mirror.probe_file}")
        return False

    def ensure_critical(self, submodules: Iterable[str] = CRITICAL_SUBMODULES) -> None:
        """Reinit critical submodules whose package exists but whose sources are missing or empty."""
        for path in submodules:
            submodule_dir = self.repo_path / path
            if not submodule_dir.parent.exists():
                continue
            if not submodule_dir.is_dir() or not any(submodule_dir.iterdir()):
                self.repair(path)

    def _clear_rebase_state(self, path: str) -> None:
        rebase_dir = self.repo_path / ".git" / "modules" / path / "rebase-apply"
        if rebase_dir.exists():
            shutil.rmtree(rebase_dir)

    def _attempt(self, description: str, func, *args) -> None:
        try:
            result = func(*args)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Ignoring failed {description}: {e}")
            return
        if isinstance(result, subprocess.CompletedProcess) and result.returncode != 0:
            logger.debug(f"Ignoring failed {description} (exit {result.returncode}): {(result.stderr or '').strip()}")
