"""
Staleness checks for expensive pipeline stages.

Two modes:

- Version-pinned stages (toolchain, kernel): the output artifact existing is
  proof of completion, because its inputs are fixed version strings.
- Content-dependent stages (rootfs): the output must exist AND the recorded
  fingerprint must equal the current one. The rootfs fingerprint combines the
  tree identifier produced by the meta-build with a checksum of the local
  init script, so editing config/init or rebuilding userland both invalidate
  the packaged initramfs.

Checks are pure reads. Callers record the fingerprint after the stage succeeds.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from .exceptions import StalePreconditionError
from .file_hashing import compute_file_hash
from .layout import BuildLayout

logger = logging.getLogger(__name__)

# Hex digests and git object ids never contain an underscore.
FINGERPRINT_SEPARATOR = "_"


class Stage(str, Enum):
    """Expensive stages whose completion is tracked across runs."""

    TOOLCHAIN = "toolchain"
    KERNEL = "kernel"
    ROOTFS = "rootfs"


def compose_fingerprint(tree_id: str, script_checksum: Optional[str] = None) -> str:
    """Join a tree identifier and an optional script checksum into one fingerprint.

    Raises:
        ValueError: If either component contains the separator
    """
    for component in (tree_id, script_checksum):
        if component and FINGERPRINT_SEPARATOR in component:
            raise ValueError(f"Fingerprint component contains '{FINGERPRINT_SEPARATOR}': {component!r}")
    if not script_checksum:
        return tree_id
    return f"{tree_id}{FINGERPRINT_SEPARATOR}{script_checksum}"


class StalenessOracle:
    """Decide whether a stage's output already exists and is current."""

    def __init__(self, layout: BuildLayout):
        self.layout = layout

    def output_path(self, stage: Stage) -> Path:
        outputs: Dict[Stage, Path] = {
            Stage.TOOLCHAIN: self.layout.toolchain_root,
            Stage.KERNEL: self.layout.kernel_image,
            Stage.ROOTFS: self.layout.initramfs,
        }
        return outputs[stage]

    def marker_path(self, stage: Stage) -> Path:
        if stage == Stage.ROOTFS:
            return self.layout.rootfs_marker
        return self.layout.build_dir / f".{stage.value}_built_hash"

    def is_up_to_date(self, stage: Stage, current_fingerprint: Optional[str] = None) -> bool:
        """
        Check whether a stage can be skipped.

        Args:
            stage: Stage to check
            current_fingerprint: Fingerprint of the stage's current inputs, or
                None for version-pinned stages where existence is enough

        Returns:
            True if the output exists and (when given) the recorded
            fingerprint matches byte for byte
        """
        if not self.output_path(stage).exists():
            return False
        if current_fingerprint is None:
            return True
        recorded = self.read_marker(stage)
        return recorded is not None and recorded == current_fingerprint

    def read_marker(self, stage: Stage) -> Optional[str]:
        """Return the recorded fingerprint, or None if there is none."""
        marker = self.marker_path(stage)
        try:
            return marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    def record(self, stage: Stage, fingerprint: str) -> None:
        """Persist a stage fingerprint.

        Written to a temp file and renamed so a reader never sees a partial marker.
        """
        marker = self.marker_path(stage)
        marker.parent.mkdir(parents=True, exist_ok=True)
        tmp = marker.with_name(marker.name + ".tmp")
        tmp.write_text(fingerprint + "\n", encoding="utf-8")
        os.replace(tmp, marker)
        logger.debug(f"Recorded {stage.value} fingerprint {fingerprint} at {marker}")

    def read_tree_id(self) -> str:
        """Read the tree identifier the meta-build writes on completion.

        Raises:
            StalePreconditionError: If the file is absent or empty, meaning the
                userland build did not finish
        """
        tree_file = self.layout.root_tree_file
        try:
            tree_id = tree_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            tree_id = ""
        if not tree_id:
            raise StalePreconditionError(
                f"Could not find {tree_file.name} - build may not have completed successfully",
                stage=Stage.ROOTFS.value,
            )
        return tree_id

    def rootfs_fingerprint(self, init_script: Path) -> str:
        """Fingerprint of the rootfs inputs: tree id plus init script checksum.

        The checksum part is omitted when no init script exists yet.
        """
        tree_id = self.read_tree_id()
        checksum = compute_file_hash(init_script) if init_script.is_file() else None
        return compose_fingerprint(tree_id, checksum)
