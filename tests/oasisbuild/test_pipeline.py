"""Tests for the Oasis build pipeline stages."""

import os
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from oasisbuild import pipeline as pipeline_module
from oasisbuild.build_retry import BuildResult, BuildState
from oasisbuild.exceptions import (
    BuildFailedError,
    PrerequisiteError,
    StageError,
    StalePreconditionError,
)
from oasisbuild.layout import BuildLayout
from oasisbuild.pipeline import XZ_LANDLOCK_DEFINES, BuildPipeline, human_size
from oasisbuild.staleness import Stage

XZ_GEN = """\
cflags{
	'-std=c99', '-Wall',
	'-D HAVE_CONFIG_H',
	'-I $dir',
}
"""


@pytest.fixture
def layout(tmp_path):
    layout = BuildLayout(tmp_path / "oasis-linux")
    layout.ensure_directories()
    layout.oasis_dir.mkdir(parents=True)
    return layout


@pytest.fixture
def git():
    adapter = MagicMock()
    adapter.submodule_deinit.return_value = subprocess.CompletedProcess(["git"], 0, "", "")
    adapter.submodule_update.return_value = subprocess.CompletedProcess(["git"], 0, "", "")
    return adapter


@pytest.fixture
def runner():
    return MagicMock()


@pytest.fixture
def build(layout, git, runner):
    return BuildPipeline(layout, git=git, runner=runner, echo=None)


class TestXzLandlockFix:
    def test_inserts_defines_after_anchor(self, build, layout):
        gen = layout.oasis_dir / "pkg" / "xz" / "gen.lua"
        gen.parent.mkdir(parents=True)
        gen.write_text(XZ_GEN)

        assert build.fix_xz_landlock()

        lines = gen.read_text().splitlines()
        anchor = lines.index("\t'-D HAVE_CONFIG_H',")
        assert lines[anchor + 1 : anchor + 4] == XZ_LANDLOCK_DEFINES
        assert lines[anchor + 4] == "\t'-I $dir',"

    def test_idempotent(self, build, layout):
        gen = layout.oasis_dir / "pkg" / "xz" / "gen.lua"
        gen.parent.mkdir(parents=True)
        gen.write_text(XZ_GEN)

        build.fix_xz_landlock()
        once = gen.read_text()
        build.fix_xz_landlock()

        assert gen.read_text() == once
        assert once.count("SYS_landlock_create_ruleset") == 1

    def test_missing_file_is_skipped(self, build):
        assert build.fix_xz_landlock() is False

    def test_missing_anchor_leaves_file_alone(self, build, layout):
        gen = layout.oasis_dir / "pkg" / "xz" / "gen.lua"
        gen.parent.mkdir(parents=True)
        gen.write_text("cflags{}\n")

        assert build.fix_xz_landlock() is False
        assert gen.read_text() == "cflags{}\n"


class TestConfigFiles:
    def test_core_config_lua(self, build, layout):
        build.write_build_config()

        content = layout.config_file("config.lua").read_text()
        assert "sets.core" in content
        assert "sets.desktop" not in content
        assert "-D_GNU_SOURCE" in content
        assert (layout.oasis_dir / "config.lua").read_text() == content

    def test_desktop_config_lua(self, layout, git, runner):
        BuildPipeline(layout, desktop=True, git=git, runner=runner).write_build_config()

        content = layout.config_file("config.lua").read_text()
        for set_name in ("core", "desktop", "extra", "media"):
            assert f"sets.{set_name}" in content

    def test_user_edits_take_precedence_over_desktop(self, layout, git, runner):
        layout.config_file("config.lua").write_text("-- my config\n")

        BuildPipeline(layout, desktop=True, git=git, runner=runner).write_build_config()

        assert layout.config_file("config.lua").read_text() == "-- my config\n"
        assert (layout.oasis_dir / "config.lua").read_text() == "-- my config\n"

    def test_generate_config_files(self, layout, git, runner):
        BuildPipeline(layout, desktop=True, git=git, runner=runner).generate_config_files()

        for name in ("config.lua", "run", "init", "isolinux.cfg"):
            assert layout.config_file(name).is_file()
        assert os.access(layout.config_file("run"), os.X_OK)
        assert os.access(layout.config_file("init"), os.X_OK)
        assert os.access(layout.qemu_dir / "run", os.X_OK)
        assert "APPEND rdinit=/init oasis.desktop" in layout.config_file("isolinux.cfg").read_text()
        assert layout.config_file("init").read_text().startswith("#!/bin/sh")

    def test_readme(self, build, layout):
        build.create_readme()
        assert "Oasis Linux QEMU Image" in (layout.qemu_dir / "README.md").read_text()


class TestToolchainAndKernel:
    def test_toolchain_present_skips_download(self, build, layout, runner):
        layout.toolchain_root.mkdir(parents=True)

        with patch.object(pipeline_module, "download_file") as download:
            build.setup_toolchain()

        download.assert_not_called()
        runner.assert_not_called()

    def test_toolchain_download_and_extract(self, build, layout, runner):
        def fake_download(url, dest):
            dest.write_bytes(b"tgz")
            return dest

        with patch.object(pipeline_module, "download_file", side_effect=fake_download) as download:
            build.setup_toolchain()

        archive = layout.toolchain_dir / "musl-cross.tgz"
        download.assert_called_once()
        assert runner.call_args.args[0][:2] == ["tar", "-xzf"]
        assert not archive.exists()

    def test_kernel_present_skips_build(self, build, layout, runner):
        layout.kernel_image.write_bytes(b"bz")

        with patch.object(pipeline_module, "download_file") as download:
            build.build_kernel()

        download.assert_not_called()
        runner.assert_not_called()

    def test_kernel_configured_tree_skips_defconfig(self, build, layout, runner):
        layout.kernel_tarball.write_bytes(b"xz")
        source = layout.kernel_source
        (source / "arch" / "x86" / "boot").mkdir(parents=True)
        (source / "arch" / "x86" / "boot" / "bzImage").write_bytes(b"kernel")
        (source / ".config").write_text("CONFIG_KVM_GUEST=y\n")

        with patch.object(pipeline_module, "download_file") as download:
            build.build_kernel()

        download.assert_not_called()
        commands = [c.args[0] for c in runner.call_args_list]
        assert len(commands) == 1
        assert commands[0][0] == "make" and commands[0][1].startswith("-j")
        assert layout.kernel_image.read_bytes() == b"kernel"


class TestSourceAndSubmodules:
    def test_existing_checkout_is_pulled(self, build, layout, git):
        (layout.oasis_dir / ".git").mkdir()
        git.pull.return_value = False

        build.clone_source()

        git.pull.assert_called_once_with(layout.oasis_dir)
        git.clone.assert_not_called()

    def test_clone_failure_is_stage_error(self, layout, runner):
        git = MagicMock()
        git.clone.side_effect = subprocess.CalledProcessError(128, ["git", "clone"])
        layout.oasis_dir.rmdir()

        with pytest.raises(StageError):
            BuildPipeline(layout, git=git, runner=runner).clone_source()

    def test_init_submodules(self, build, layout, git):
        build.init_submodules()

        git.set_config.assert_called_once_with(layout.oasis_dir, "commit.gpgsign", "false")
        git.submodule_update.assert_any_call(layout.oasis_dir, None, True)


class TestUserlandBuild:
    def test_environment_puts_toolchain_first(self, build, layout):
        path = build.build_environment()["PATH"].split(os.pathsep)
        assert path[0] == str(layout.toolchain_bin)
        assert path[1] == str(layout.host_tools_dir)

    def test_failed_loop_raises_with_result(self, build, layout, runner):
        result = BuildResult(state=BuildState.RETRY_EXHAUSTED, attempts=20, retries=20, log_path=layout.build_log)
        with patch.object(pipeline_module, "BuildRetryLoop") as loop_cls:
            loop_cls.return_value.run.return_value = result
            with pytest.raises(BuildFailedError) as exc_info:
                build.build_userland()

        assert exc_info.value.result is result
        assert runner.call_args.args[0] == ["lua5.1", "setup.lua"]
        kwargs = loop_cls.call_args.kwargs
        assert kwargs["cwd"] == layout.oasis_dir
        assert kwargs["log_path"] == layout.build_log
        assert kwargs["command"][1].startswith("-j")

    def test_successful_loop(self, build, layout):
        result = BuildResult(state=BuildState.SUCCEEDED, attempts=3, retries=2, log_path=layout.build_log)
        with patch.object(pipeline_module, "BuildRetryLoop") as loop_cls:
            loop_cls.return_value.run.return_value = result
            build.build_userland()


class TestRootfs:
    def test_missing_tree_is_precondition_failure(self, build):
        with pytest.raises(StalePreconditionError):
            build.create_rootfs()

    def test_up_to_date_rootfs_is_skipped(self, build, layout, git):
        layout.root_tree_file.parent.mkdir(parents=True)
        layout.root_tree_file.write_text("4b825dc642cb6eb9a060e54bf8d69288fbee4904\n")
        layout.initramfs.write_bytes(b"gz")
        init = layout.config_file("init")
        init.write_text("#!/bin/sh\n")
        build.oracle.record(Stage.ROOTFS, build.oracle.rootfs_fingerprint(init))

        build.create_rootfs()

        git.clone.assert_not_called()
        git.archive_into.assert_not_called()

    def test_default_init_is_written_before_fingerprinting(self, build, layout):
        with pytest.raises(StalePreconditionError):
            build.create_rootfs()
        assert layout.config_file("init").is_file()


class TestIso:
    def test_requires_existing_build(self, build):
        with pytest.raises(StageError, match="No build found"):
            build.create_iso()

    def test_reports_missing_iso_tools(self, build, layout, tmp_path):
        layout.kernel_image.write_bytes(b"bz")
        layout.initramfs.write_bytes(b"gz")

        with patch.object(pipeline_module.shutil, "which", return_value=None), patch.object(
            pipeline_module, "ISOLINUX_BIN", tmp_path / "none" / "isolinux.bin"
        ), patch.object(pipeline_module, "LDLINUX_C32", tmp_path / "none" / "ldlinux.c32"):
            with pytest.raises(PrerequisiteError) as exc_info:
                build.create_iso()

        assert exc_info.value.missing == ["xorriso", "isolinux", "syslinux-common"]

    def test_builds_hybrid_iso(self, build, layout, runner, tmp_path):
        layout.kernel_image.write_bytes(b"bz")
        layout.initramfs.write_bytes(b"gz")
        syslinux = tmp_path / "syslinux"
        syslinux.mkdir()
        (syslinux / "isolinux.bin").write_bytes(b"isolinux")
        (syslinux / "ldlinux.c32").write_bytes(b"ldlinux")

        def fake_xorriso(command, cwd=None, env=None):
            Path(command[command.index("-o") + 1]).write_bytes(b"\0" * 2048)

        runner.side_effect = fake_xorriso
        with patch.object(pipeline_module.shutil, "which", return_value="/usr/bin/xorriso"), patch.object(
            pipeline_module, "ISOLINUX_BIN", syslinux / "isolinux.bin"
        ), patch.object(pipeline_module, "LDLINUX_C32", syslinux / "ldlinux.c32"):
            iso = build.create_iso()

        assert iso == layout.iso_image
        boot = layout.iso_dir / "boot"
        assert (boot / "bzImage").read_bytes() == b"bz"
        assert (boot / "isolinux" / "isolinux.cfg").read_text().startswith("DEFAULT oasis")
        command = runner.call_args.args[0]
        assert command[:3] == ["xorriso", "-as", "mkisofs"]
        assert command[-1] == str(layout.iso_dir)


def test_human_size():
    assert human_size(512) == "512B"
    assert human_size(2048) == "2.0K"
    assert human_size(5 * 1024 * 1024) == "5.0M"
    assert human_size(3 * 1024**3) == "3.0G"
