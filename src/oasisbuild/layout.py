"""File layout for a build directory.

    BUILD_DIR/
        src/oasis/          upstream Oasis checkout (ninja build root)
        toolchain/          musl cross-compiler
        kernel/             kernel tarball and source tree
        rootfs/             extracted root filesystem + .built_hash marker
        qemu/               bzImage, initramfs.img.gz, run, README.md
        config/             user-editable config.lua, init, run, isolinux.cfg
        iso/                staging tree for the ISO image
        build.log           transcript of the most recent ninja attempt
"""

from pathlib import Path
from typing import Optional

from .config import settings


class BuildLayout:
    """Paths for a single build directory."""

    SUBDIRS = ("src", "toolchain", "kernel", "rootfs", "qemu", "config")

    def __init__(self, build_dir: Path, kernel_version: Optional[str] = None):
        self.build_dir = Path(build_dir).resolve()
        self.kernel_version = kernel_version or settings.kernel_version

    def ensure_directories(self) -> None:
        """Create all top-level build directories."""
        for name in self.SUBDIRS:
            (self.build_dir / name).mkdir(parents=True, exist_ok=True)

    # Source tree
    @property
    def oasis_dir(self) -> Path:
        return self.build_dir / "src" / "oasis"

    @property
    def root_tree_file(self) -> Path:
        """Tree identifier written by the meta-build once the rootfs commit exists."""
        return self.oasis_dir / "out" / "root.tree"

    @property
    def root_repo(self) -> Path:
        return self.oasis_dir / "out" / "root.git"

    @property
    def host_tools_dir(self) -> Path:
        """Host tools (zic) the build produces and later steps invoke."""
        return self.oasis_dir / "out" / "pkg" / "tz"

    @property
    def build_log(self) -> Path:
        return self.build_dir / "build.log"

    # Toolchain
    @property
    def toolchain_dir(self) -> Path:
        return self.build_dir / "toolchain"

    @property
    def toolchain_root(self) -> Path:
        return self.toolchain_dir / settings.toolchain_name

    @property
    def toolchain_bin(self) -> Path:
        return self.toolchain_root / "bin"

    # Kernel
    @property
    def kernel_dir(self) -> Path:
        return self.build_dir / "kernel"

    @property
    def kernel_tarball(self) -> Path:
        return self.kernel_dir / f"linux-{self.kernel_version}.tar.xz"

    @property
    def kernel_source(self) -> Path:
        return self.kernel_dir / f"linux-{self.kernel_version}"

    # Root filesystem
    @property
    def rootfs_dir(self) -> Path:
        return self.build_dir / "rootfs"

    @property
    def rootfs_marker(self) -> Path:
        return self.rootfs_dir / ".built_hash"

    @property
    def etc_checkout(self) -> Path:
        return self.rootfs_dir / "oasis-etc"

    # Outputs
    @property
    def qemu_dir(self) -> Path:
        return self.build_dir / "qemu"

    @property
    def kernel_image(self) -> Path:
        return self.qemu_dir / "bzImage"

    @property
    def initramfs(self) -> Path:
        return self.qemu_dir / "initramfs.img.gz"

    @property
    def iso_dir(self) -> Path:
        return self.build_dir / "iso"

    @property
    def iso_image(self) -> Path:
        return self.build_dir / "oasis-linux.iso"

    # User-editable config
    @property
    def config_dir(self) -> Path:
        return self.build_dir / "config"

    def config_file(self, name: str) -> Path:
        return self.config_dir / name
