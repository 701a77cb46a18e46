"""Host prerequisite checks: required tools and free disk space."""

import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .config import settings
from .exceptions import PrerequisiteError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ["lua5.1", "bison", "flex", "nasm", "curl", "git", "cpio", "gzip", "make", "gcc", "bc", "ninja", "xz"]

INSTALL_HINT = (
    "sudo apt-get install -y lua5.1 bison flex nasm bc ninja-build xz-utils "
    "libwayland-dev curl git cpio gzip build-essential"
)

ISO_INSTALL_HINT = "sudo apt-get install -y xorriso isolinux syslinux-common"


def find_missing_tools(
    tools: Iterable[str] = REQUIRED_TOOLS, which: Callable[[str], Optional[str]] = shutil.which
) -> List[str]:
    """Return the tools that are not on PATH, in the order given."""
    return [tool for tool in tools if which(tool) is None]


def check_required_tools(tools: Iterable[str] = REQUIRED_TOOLS, which=shutil.which) -> None:
    """
    Verify every required host tool is installed.

    Raises:
        PrerequisiteError: Listing all missing tools at once
    """
    logger.info("Checking prerequisites...")
    missing = find_missing_tools(tools, which)
    if missing:
        logger.error(f"Missing required tools: {' '.join(missing)}")
        logger.error(f"Install with: {INSTALL_HINT}")
        raise PrerequisiteError(f"Missing required tools: {' '.join(missing)}", missing=missing)
    logger.info("All prerequisites found.")


def check_disk_space(path: Path, min_free_bytes: Optional[int] = None) -> bool:
    """Check if sufficient disk space is available next to ``path``.

    Low space only warns; the build may still fit.

    Returns:
        True if sufficient space is available (or it cannot be determined)
    """
    if min_free_bytes is None:
        min_free_bytes = settings.min_free_disk_bytes

    check_path = Path(path).resolve()
    while not check_path.exists() and check_path.parent != check_path:
        check_path = check_path.parent

    try:
        usage = shutil.disk_usage(check_path)
    except OSError as e:
        logger.warning(f"Failed to check disk space for {path}: {e}")
        return True

    if usage.free >= min_free_bytes:
        return True

    avail_gb = usage.free // (1024**3)
    want_gb = min_free_bytes // (1024**3)
    logger.warning(f"Low disk space: {avail_gb}GB available, ~{want_gb}GB recommended.")
    logger.warning("Build may fail if disk fills up. Continuing anyway...")
    return False
