"""Tests for stage staleness checks and fingerprints."""

import pytest

from oasisbuild.exceptions import StalePreconditionError
from oasisbuild.file_hashing import compute_file_hash
from oasisbuild.layout import BuildLayout
from oasisbuild.staleness import (
    FINGERPRINT_SEPARATOR,
    Stage,
    StalenessOracle,
    compose_fingerprint,
)

TREE_A = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
TREE_B = "9c1185a5c5e9fc54612808977ee8f548b2258d31"


@pytest.fixture
def layout(tmp_path):
    layout = BuildLayout(tmp_path / "oasis-linux")
    layout.ensure_directories()
    return layout


@pytest.fixture
def oracle(layout):
    return StalenessOracle(layout)


def write_tree(layout, tree_id):
    layout.root_tree_file.parent.mkdir(parents=True, exist_ok=True)
    layout.root_tree_file.write_text(tree_id + "\n")


def write_init(layout, content="#!/bin/sh\nexec /bin/ksh -l\n"):
    init = layout.config_file("init")
    init.write_text(content)
    return init


class TestVersionPinnedStages:
    def test_toolchain_missing(self, oracle):
        assert not oracle.is_up_to_date(Stage.TOOLCHAIN)

    def test_toolchain_present(self, oracle, layout):
        layout.toolchain_root.mkdir(parents=True)
        assert oracle.is_up_to_date(Stage.TOOLCHAIN)

    def test_kernel_existence_is_enough(self, oracle, layout):
        layout.kernel_image.write_bytes(b"\x00bzImage")
        assert oracle.is_up_to_date(Stage.KERNEL)
        # No marker was ever recorded and none is needed
        assert oracle.read_marker(Stage.KERNEL) is None


class TestRootfsFingerprint:
    def test_identical_inputs_are_up_to_date(self, oracle, layout):
        write_tree(layout, TREE_A)
        init = write_init(layout)
        layout.initramfs.write_bytes(b"gz")
        fingerprint = oracle.rootfs_fingerprint(init)
        oracle.record(Stage.ROOTFS, fingerprint)

        assert oracle.is_up_to_date(Stage.ROOTFS, oracle.rootfs_fingerprint(init))

    def test_changed_tree_is_stale(self, oracle, layout):
        write_tree(layout, TREE_A)
        init = write_init(layout)
        layout.initramfs.write_bytes(b"gz")
        oracle.record(Stage.ROOTFS, oracle.rootfs_fingerprint(init))

        write_tree(layout, TREE_B)

        assert not oracle.is_up_to_date(Stage.ROOTFS, oracle.rootfs_fingerprint(init))

    def test_changed_init_script_is_stale(self, oracle, layout):
        write_tree(layout, TREE_A)
        init = write_init(layout)
        layout.initramfs.write_bytes(b"gz")
        oracle.record(Stage.ROOTFS, oracle.rootfs_fingerprint(init))

        write_init(layout, "#!/bin/sh\necho edited\n")

        assert not oracle.is_up_to_date(Stage.ROOTFS, oracle.rootfs_fingerprint(init))

    def test_missing_marker_is_stale(self, oracle, layout):
        write_tree(layout, TREE_A)
        layout.initramfs.write_bytes(b"gz")
        assert not oracle.is_up_to_date(Stage.ROOTFS, TREE_A)

    def test_missing_output_is_stale_even_with_matching_marker(self, oracle, layout):
        oracle.record(Stage.ROOTFS, TREE_A)
        assert not oracle.is_up_to_date(Stage.ROOTFS, TREE_A)

    def test_fingerprint_combines_tree_and_checksum(self, oracle, layout):
        write_tree(layout, TREE_A)
        init = write_init(layout)
        assert oracle.rootfs_fingerprint(init) == f"{TREE_A}{FINGERPRINT_SEPARATOR}{compute_file_hash(init)}"

    def test_fingerprint_without_init_script_is_tree_only(self, oracle, layout):
        write_tree(layout, TREE_A)
        assert oracle.rootfs_fingerprint(layout.config_file("init")) == TREE_A

    def test_missing_tree_file_is_precondition_failure(self, oracle, layout):
        with pytest.raises(StalePreconditionError, match="root.tree"):
            oracle.rootfs_fingerprint(write_init(layout))

    def test_empty_tree_file_is_precondition_failure(self, oracle, layout):
        write_tree(layout, "   ")
        with pytest.raises(StalePreconditionError) as exc_info:
            oracle.read_tree_id()
        assert exc_info.value.stage == "rootfs"


class TestMarkers:
    def test_record_survives_new_oracle(self, layout):
        StalenessOracle(layout).record(Stage.ROOTFS, TREE_A)
        assert StalenessOracle(layout).read_marker(Stage.ROOTFS) == TREE_A

    def test_record_overwrites_and_leaves_no_temp_file(self, oracle, layout):
        oracle.record(Stage.ROOTFS, TREE_A)
        oracle.record(Stage.ROOTFS, TREE_B)
        assert oracle.read_marker(Stage.ROOTFS) == TREE_B
        assert not list(layout.rootfs_dir.glob("*.tmp"))

    def test_rootfs_marker_location(self, oracle, layout):
        assert oracle.marker_path(Stage.ROOTFS) == layout.rootfs_dir / ".built_hash"


class TestComposeFingerprint:
    def test_separator_in_component_rejected(self):
        with pytest.raises(ValueError):
            compose_fingerprint("tree_id", "abc")

    def test_checksum_optional(self):
        assert compose_fingerprint(TREE_A) == TREE_A
        assert compose_fingerprint(TREE_A, None) == TREE_A
