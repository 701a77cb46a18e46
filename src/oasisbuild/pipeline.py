"""
Oasis Linux build pipeline.

Stages run in order; expensive ones consult the StalenessOracle so that a
repeated invocation only redoes what changed:

    prerequisites -> directories -> toolchain -> clone -> submodules ->
    config.lua -> xz fix -> userland (build-retry loop) -> kernel ->
    rootfs/initramfs -> qemu launcher -> README

``customize`` only writes the editable config files; ``create_iso`` packages
an existing build into a hybrid ISO.
"""

import gzip
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import IO, Callable, List, Optional

from .build_retry import BuildRetryLoop, RetryPolicy
from .config import get_parallel_jobs, settings
from .downloads import download_file
from .exceptions import BuildFailedError, PrerequisiteError, StageError
from .git_adapter import LocalGitCliAdapter
from .layout import BuildLayout
from .prerequisites import ISO_INSTALL_HINT, check_disk_space, check_required_tools
from .staleness import StalenessOracle, Stage
from .submodule_repair import SubmoduleRepairer
from .templates import (
    INIT_SCRIPT,
    README,
    RUN_SCRIPT,
    make_executable,
    render_config_lua,
    render_isolinux_cfg,
    write_default_if_absent,
)

logger = logging.getLogger(__name__)

ROOTFS_DIRS = ["dev", "proc", "sys", "tmp", "var/run", "var/log", "home", "root", "run", "mnt"]

XZ_LANDLOCK_MARKER = "SYS_landlock_create_ruleset"
XZ_LANDLOCK_ANCHOR = "'-D HAVE_CONFIG_H',"
# x86_64 syscall numbers, Linux 5.13+
XZ_LANDLOCK_DEFINES = [
    "\t'-D SYS_landlock_create_ruleset=444',",
    "\t'-D SYS_landlock_add_rule=445',",
    "\t'-D SYS_landlock_restrict_self=446',",
]

ISOLINUX_BIN = Path("/usr/lib/ISOLINUX/isolinux.bin")
ISOHDPFX_BIN = Path("/usr/lib/ISOLINUX/isohdpfx.bin")
LDLINUX_C32 = Path("/usr/lib/syslinux/modules/bios/ldlinux.c32")

CommandRunner = Callable[..., None]


def run_command(command: List[str], cwd: Optional[Path] = None, env: Optional[dict] = None) -> None:
    """Run a command with inherited stdio.

    Raises:
        StageError: If the command cannot be started or exits non-zero
    """
    logger.debug(f"Running: {' '.join(command)} (cwd={cwd})")
    try:
        subprocess.run(command, cwd=str(cwd) if cwd else None, env=env, check=True)
    except subprocess.CalledProcessError as e:
        raise StageError(f"Command failed with exit code {e.returncode}: {' '.join(command)}") from e
    except OSError as e:
        raise StageError(f"Could not run {command[0]}: {e}") from e


def human_size(num_bytes: int) -> str:
    """Format a byte count the way ``du -h`` does (1.5M, 700K)."""
    size = float(num_bytes)
    for unit in ("B", "K", "M"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}G"


class BuildPipeline:
    """Fetch, configure, compile and package Oasis Linux into a QEMU image."""

    def __init__(
        self,
        layout: BuildLayout,
        desktop: bool = False,
        policy: Optional[RetryPolicy] = None,
        git: Optional[LocalGitCliAdapter] = None,
        runner: CommandRunner = run_command,
        echo: Optional[IO[str]] = sys.stdout,
    ):
        self.layout = layout
        self.desktop = desktop
        self.policy = policy or RetryPolicy()
        self.git = git or LocalGitCliAdapter()
        self.run_command = runner
        self.echo = echo
        self.oracle = StalenessOracle(layout)
        self.repairer = SubmoduleRepairer(layout.oasis_dir, git=self.git)

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    def run(self) -> None:
        """Run the full build.

        Raises:
            OasisBuildError: On the first stage that cannot complete
        """
        logger.info("============================================")
        logger.info("Starting Oasis Linux build...")
        logger.info(f"Build directory: {self.layout.build_dir}")
        logger.info("============================================")

        self.check_prerequisites()
        self.setup_directories()
        self.setup_toolchain()
        self.clone_source()
        self.init_submodules()
        self.write_build_config()
        self.fix_xz_landlock()
        self.build_userland()
        self.build_kernel()
        self.create_rootfs()
        self.create_qemu_script()
        self.create_readme()

        qemu = self.layout.qemu_dir
        logger.info("============================================")
        logger.info("Build completed successfully!")
        if self.desktop:
            logger.info("  Mode: Desktop (velox WM + st + netsurf)")
        else:
            logger.info("  Mode: Core only (console)")
        logger.info("============================================")
        logger.info(f"To run Oasis Linux in QEMU: cd {qemu} && ./run   (-c console, -s serial)")
        logger.info("To create a bootable ISO: oasisbuild iso")
        logger.info(f"To customize config files for future builds, edit files in {self.layout.config_dir}")
        logger.info(f"Files created: {self.layout.kernel_image}, {self.layout.initramfs}, {qemu / 'run'}")

    def customize(self) -> None:
        """Generate the editable config files and stop."""
        logger.info("============================================")
        logger.info("Generating config files for customization...")
        logger.info(f"Build directory: {self.layout.build_dir}")
        logger.info("============================================")

        self.setup_directories()
        self.clone_source()
        self.generate_config_files()

        logger.info(f"Config files generated in {self.layout.config_dir}")
        logger.info("Edit any of these before building:")
        logger.info("  config/config.lua    - Package sets, compiler flags")
        logger.info("  config/init          - Init script (runs at boot)")
        logger.info("  config/run           - QEMU launch script")
        logger.info("  config/isolinux.cfg  - ISO bootloader config")
        if self.desktop:
            logger.info("Defaults were generated for desktop mode.")
        else:
            logger.info("Defaults were generated for core mode.")
            logger.info("For desktop defaults, delete config/ and rerun with customize --desktop")
        logger.info("Once config files exist, --desktop is ignored; your edits take precedence.")

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    def check_prerequisites(self) -> None:
        check_required_tools()
        self.layout.build_dir.parent.mkdir(parents=True, exist_ok=True)
        check_disk_space(self.layout.build_dir.parent)

    def setup_directories(self) -> None:
        logger.info(f"Setting up build directories in {self.layout.build_dir}...")
        self.layout.ensure_directories()

    def setup_toolchain(self) -> None:
        """Download and extract the musl cross-compiler unless already present."""
        if self.oracle.is_up_to_date(Stage.TOOLCHAIN):
            logger.info("Toolchain already exists, skipping download.")
            return

        archive = self.layout.toolchain_dir / "musl-cross.tgz"
        logger.info("Downloading musl cross-compiler toolchain...")
        download_file(settings.toolchain_url, archive)

        logger.info("Extracting toolchain...")
        self.run_command(["tar", "-xzf", str(archive), "-C", str(self.layout.toolchain_dir)])
        archive.unlink()

    def clone_source(self) -> None:
        oasis_dir = self.layout.oasis_dir
        if (oasis_dir / ".git").is_dir():
            logger.info("Oasis repository already cloned, updating...")
            if not self.git.pull(oasis_dir):
                logger.warning("git pull failed, continuing with the existing checkout")
            return

        logger.info("Cloning Oasis Linux repository...")
        try:
            self.git.clone(settings.oasis_repo, oasis_dir)
        except (subprocess.CalledProcessError, OSError) as e:
            raise StageError(f"Failed to clone {settings.oasis_repo}: {e}", stage="clone") from e

    def init_submodules(self) -> None:
        """Initialize all package submodules, fixing the ones that commonly break."""
        logger.info("Initializing git submodules (this may take a while)...")

        # GPG signing prompts can stall submodule operations
        try:
            self.git.set_config(self.layout.oasis_dir, "commit.gpgsign", "false")
        except (subprocess.CalledProcessError, OSError) as e:
            logger.warning(f"Could not disable commit.gpgsign: {e}")

        mirror_package = settings.mirror_package
        self.repairer.clone_from_mirror(mirror_package)
        self.repairer.reinit_all()

        logger.info("Ensuring critical submodules are properly initialized...")
        self.repairer.ensure_critical()

        if (self.layout.oasis_dir / mirror_package).is_dir():
            self.repairer.clone_from_mirror(mirror_package)

    def write_build_config(self) -> None:
        """Write the default config.lua if absent and install it into the source tree."""
        config_file = self.layout.config_file("config.lua")
        if write_default_if_absent(config_file, render_config_lua(self.desktop)):
            if self.desktop:
                logger.info("Desktop mode enabled - including desktop, extra, and media sets.")
            else:
                logger.info("Core-only mode (use --desktop for graphical desktop).")
        shutil.copyfile(config_file, self.layout.oasis_dir / "config.lua")

    def fix_xz_landlock(self) -> bool:
        """Add landlock syscall numbers to xz's build flags.

        Returns:
            True if the defines are present afterwards
        """
        logger.info("Applying xz landlock syscall fix...")
        xz_gen = self.layout.oasis_dir / "pkg" / "xz" / "gen.lua"
        if not xz_gen.is_file():
            logger.warning("xz/gen.lua not found, skipping landlock fix.")
            return False

        content = xz_gen.read_text(encoding="utf-8")
        if XZ_LANDLOCK_MARKER in content:
            logger.info("xz landlock fix already applied.")
            return True

        patched: List[str] = []
        inserted = False
        for line in content.splitlines(keepends=True):
            patched.append(line)
            if XZ_LANDLOCK_ANCHOR in line:
                if not line.endswith("\n"):
                    patched[-1] = line + "\n"
                patched.extend(define + "\n" for define in XZ_LANDLOCK_DEFINES)
                inserted = True

        if not inserted:
            logger.warning(f"Could not find {XZ_LANDLOCK_ANCHOR} in xz/gen.lua, skipping landlock fix.")
            return False

        xz_gen.write_text("".join(patched), encoding="utf-8")
        logger.info("xz landlock fix applied successfully.")
        return True

    def build_environment(self) -> dict:
        """Environment for the userland build: cross toolchain and built host tools on PATH."""
        env = dict(os.environ)
        env["PATH"] = os.pathsep.join(
            [str(self.layout.toolchain_bin), str(self.layout.host_tools_dir), env.get("PATH", "")]
        )
        return env

    def build_userland(self) -> None:
        """Generate ninja files and drive ninja through the build-retry loop.

        Raises:
            BuildFailedError: When the loop aborts or exhausts its budget
        """
        oasis_dir = self.layout.oasis_dir
        env = self.build_environment()

        logger.info("Running setup.lua to generate build files...")
        self.run_command(["lua5.1", "setup.lua"], cwd=oasis_dir, env=env)

        logger.info("Building Oasis Linux with ninja (this will take a while)...")
        ninja = "samu" if shutil.which("samu") else "ninja"
        loop = BuildRetryLoop(
            command=[ninja, f"-j{get_parallel_jobs()}"],
            cwd=oasis_dir,
            log_path=self.layout.build_log,
            repairer=self.repairer,
            env=env,
            policy=self.policy,
            echo=self.echo,
        )
        result = loop.run()
        if not result.succeeded:
            raise BuildFailedError(f"Userland build {result.state.value}: {result.reason}", result=result)

    def build_kernel(self) -> None:
        """Download, configure and build the kernel unless bzImage already exists."""
        if self.oracle.is_up_to_date(Stage.KERNEL):
            logger.info("Kernel already built, skipping.")
            return

        layout = self.layout
        version = layout.kernel_version
        if not layout.kernel_tarball.exists():
            major = version.split(".")[0]
            url = f"{settings.kernel_mirror}/v{major}.x/{layout.kernel_tarball.name}"
            logger.info(f"Downloading Linux kernel {version}...")
            download_file(url, layout.kernel_tarball)

        if not layout.kernel_source.is_dir():
            logger.info("Extracting kernel source...")
            self.run_command(["tar", "xf", layout.kernel_tarball.name], cwd=layout.kernel_dir)

        source = layout.kernel_source
        if not (source / ".config").exists():
            logger.info("Configuring kernel for QEMU/KVM...")
            self.run_command(["make", "defconfig"], cwd=source)
            self.run_command(["make", "kvm_guest.config"], cwd=source)
        else:
            logger.info("Kernel already configured, skipping defconfig.")

        logger.info("Building kernel (this will take a while)...")
        self.run_command(["make", f"-j{get_parallel_jobs()}"], cwd=source)

        logger.info("Copying kernel to qemu directory...")
        layout.qemu_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source / "arch" / "x86" / "boot" / "bzImage", layout.kernel_image)

    def create_rootfs(self) -> None:
        """Extract the built tree and pack it with config/init into an initramfs.

        Raises:
            StalePreconditionError: If the userland build left no tree identifier
        """
        layout = self.layout
        init_config = layout.config_file("init")
        write_default_if_absent(init_config, INIT_SCRIPT, executable=True)

        fingerprint = self.oracle.rootfs_fingerprint(init_config)
        if self.oracle.is_up_to_date(Stage.ROOTFS, fingerprint):
            logger.info("Initramfs already up to date, skipping.")
            return

        tree_id = self.oracle.read_tree_id()
        logger.info("Extracting root filesystem from build...")
        bare_repo = layout.rootfs_dir / "root.git"
        root = layout.rootfs_dir / "root"
        shutil.rmtree(bare_repo, ignore_errors=True)
        try:
            self.git.clone(str(layout.root_repo), bare_repo, bare=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise StageError(f"Failed to clone {layout.root_repo}: {e}", stage=Stage.ROOTFS.value) from e

        shutil.rmtree(root, ignore_errors=True)
        root.mkdir(parents=True)
        try:
            self.git.archive_into(bare_repo, tree_id, root)
        except (subprocess.CalledProcessError, OSError) as e:
            raise StageError(f"Failed to extract tree {tree_id}: {e}", stage=Stage.ROOTFS.value) from e

        for name in ROOTFS_DIRS:
            (root / name).mkdir(parents=True, exist_ok=True)

        self._overlay_etc(root / "etc")

        shutil.copyfile(init_config, root / "init")
        make_executable(root / "init")

        logger.info("Creating initramfs...")
        self._pack_initramfs(root, layout.initramfs)
        self.oracle.record(Stage.ROOTFS, fingerprint)

    def create_qemu_script(self) -> None:
        run_config = self.layout.config_file("run")
        write_default_if_absent(run_config, RUN_SCRIPT, executable=True)
        target = self.layout.qemu_dir / "run"
        shutil.copyfile(run_config, target)
        make_executable(target)

    def create_readme(self) -> None:
        (self.layout.qemu_dir / "README.md").write_text(README, encoding="utf-8")

    def generate_config_files(self) -> None:
        """Write every editable config default that does not exist yet."""
        self.write_build_config()
        self.create_qemu_script()
        write_default_if_absent(self.layout.config_file("init"), INIT_SCRIPT, executable=True)
        write_default_if_absent(self.layout.config_file("isolinux.cfg"), render_isolinux_cfg(self.desktop))

    def create_iso(self) -> Path:
        """Package an existing kernel + initramfs into a hybrid (CD/USB) ISO.

        Returns:
            Path of the ISO image

        Raises:
            StageError: If no build exists yet
            PrerequisiteError: If xorriso or the syslinux files are missing
        """
        layout = self.layout
        if not layout.kernel_image.is_file() or not layout.initramfs.is_file():
            logger.error(f"No build found at {layout.qemu_dir}")
            logger.error("Run 'oasisbuild build' first, then 'oasisbuild iso'")
            raise StageError(f"No build found at {layout.qemu_dir}", stage="iso")

        missing = []
        if shutil.which("xorriso") is None:
            missing.append("xorriso")
        if not ISOLINUX_BIN.is_file():
            missing.append("isolinux")
        if not LDLINUX_C32.is_file():
            missing.append("syslinux-common")
        if missing:
            logger.error(f"Missing ISO tools: {' '.join(missing)}")
            logger.error(f"Install with: {ISO_INSTALL_HINT}")
            raise PrerequisiteError(f"Missing ISO tools: {' '.join(missing)}", missing=missing)

        logger.info(f"Creating bootable ISO from {layout.qemu_dir} ...")
        iso_dir = layout.iso_dir
        shutil.rmtree(iso_dir, ignore_errors=True)
        isolinux_dir = iso_dir / "boot" / "isolinux"
        isolinux_dir.mkdir(parents=True)

        shutil.copyfile(layout.kernel_image, iso_dir / "boot" / "bzImage")
        shutil.copyfile(layout.initramfs, iso_dir / "boot" / "initramfs.img.gz")
        shutil.copyfile(ISOLINUX_BIN, isolinux_dir / "isolinux.bin")
        shutil.copyfile(LDLINUX_C32, isolinux_dir / "ldlinux.c32")

        iso_config = layout.config_file("isolinux.cfg")
        write_default_if_absent(iso_config, render_isolinux_cfg(self.desktop))
        shutil.copyfile(iso_config, isolinux_dir / "isolinux.cfg")

        iso_out = layout.iso_image
        self.run_command(
            [
                "xorriso", "-as", "mkisofs",
                "-o", str(iso_out),
                "-isohybrid-mbr", str(ISOHDPFX_BIN),
                "-c", "boot/isolinux/boot.cat",
                "-b", "boot/isolinux/isolinux.bin",
                "-no-emul-boot",
                "-boot-load-size", "4",
                "-boot-info-table",
                str(iso_dir),
            ]
        )
        logger.info(f"ISO created: {iso_out} ({human_size(iso_out.stat().st_size)})")
        return iso_out

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _overlay_etc(self, etc_dir: Path) -> None:
        """Copy the upstream /etc configuration over the tree. Optional; the system boots without it."""
        checkout = self.layout.etc_checkout
        if not checkout.is_dir():
            try:
                self.git.clone(settings.oasis_etc_repo, checkout, check=False)
            except OSError as e:
                logger.warning(f"Could not clone {settings.oasis_etc_repo}: {e}")

        etc_dir.mkdir(parents=True, exist_ok=True)
        if not checkout.is_dir():
            return
        for entry in checkout.iterdir():
            if entry.name.startswith("."):
                continue
            target = etc_dir / entry.name
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.copytree(entry, target, symlinks=True, dirs_exist_ok=True)
                else:
                    shutil.copy2(entry, target, follow_symlinks=False)
            except OSError as e:
                logger.warning(f"Could not copy {entry.name} into /etc: {e}")

    def _pack_initramfs(self, root: Path, output: Path) -> None:
        """``find . | cpio -o -H newc | gzip > output``, checking both producers' exit status."""
        output.parent.mkdir(parents=True, exist_ok=True)
        tmp = output.with_name(output.name + ".tmp")
        find_cmd = ["find", "."]
        cpio_cmd = ["cpio", "-o", "-H", "newc", "--quiet"]

        find = subprocess.Popen(find_cmd, cwd=str(root), stdout=subprocess.PIPE)
        cpio = subprocess.Popen(cpio_cmd, cwd=str(root), stdin=find.stdout, stdout=subprocess.PIPE)
        find.stdout.close()
        try:
            with gzip.open(tmp, "wb") as archive:
                shutil.copyfileobj(cpio.stdout, archive)
        finally:
            cpio.stdout.close()
        find_status = find.wait()
        cpio_status = cpio.wait()
        if find_status != 0 or cpio_status != 0:
            tmp.unlink(missing_ok=True)
            raise StageError(
                f"Packing initramfs failed (find exit {find_status}, cpio exit {cpio_status})",
                stage=Stage.ROOTFS.value,
            )
        os.replace(tmp, output)
