"""Default contents of the user-editable config files.

Files under BUILD_DIR/config/ are written once and never overwritten, so a
user's edits always take precedence over ``--desktop``.
"""

import logging
import os
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

_FS_CORE = """\
	-- package/file selection - core set for bootable system
	fs={
		{sets.core, exclude={'^include/', '^lib/.*%.a$'}},
	},"""

_FS_DESKTOP = """\
	-- package/file selection - core + desktop + extra + media
	fs={
		{sets.core, exclude={'^include/', '^lib/.*%.a$'}},
		{sets.desktop, exclude={'^include/', '^lib/.*%.a$'}},
		{sets.extra, exclude={'^include/', '^lib/.*%.a$'}},
		{sets.media, exclude={'^include/', '^lib/.*%.a$'}},
	},"""

_CONFIG_LUA = """\
local sets = dofile(basedir..'/sets.lua')

return {{
	-- build output directory
	builddir='out',

	-- install prefix
	prefix='',

	-- compress man pages
	gzman=true,

{fs}

	-- target toolchain and flags
	target={{
		platform='x86_64-linux-musl',
		cflags='-Os -fPIE -pipe',
		ldflags='-s -static-pie',
	}},

	-- host toolchain and flags
	-- NOTE: -D_GNU_SOURCE is required for pipe2() support in host tools
	host={{
		cflags='-O2 -pipe -D_GNU_SOURCE',
		ldflags='',
	}},

	-- output git repository
	repo={{
		path='out/root.git',
		flags='--bare',
		tag='tree',
		branch='master',
	}},
}}
"""

INIT_SCRIPT = r'''#!/bin/sh

# Mount essential filesystems
mount -t devtmpfs devtmpfs /dev
mount -t proc proc /proc
mount -t sysfs sysfs /sys
mount -t tmpfs tmpfs /tmp
mount -t tmpfs tmpfs /run

# Create device nodes if they don't exist
mknod -m 666 /dev/null c 1 3 2>/dev/null
mknod -m 666 /dev/zero c 1 5 2>/dev/null
mknod -m 666 /dev/console c 5 1 2>/dev/null
mknod -m 666 /dev/tty c 5 0 2>/dev/null

# Set up basic environment
export PATH=/bin:/usr/bin:/libexec/velox
export HOME=/root
export TERM=linux

# Check kernel command line for desktop mode
DESKTOP=false
for param in $(cat /proc/cmdline); do
    case "$param" in
        oasis.desktop) DESKTOP=true ;;
    esac
done

if [ "$DESKTOP" = "true" ] && [ -x /bin/velox ]; then
    # Set up Wayland environment
    export XDG_RUNTIME_DIR=/run/user
    mkdir -p "$XDG_RUNTIME_DIR"

    # Copy velox config if available
    mkdir -p /root
    if [ -f /share/doc/velox/velox.conf.sample ] && [ ! -f /root/velox.conf ]; then
        cp /share/doc/velox/velox.conf.sample /root/velox.conf
    fi

    echo "Starting Oasis desktop (velox)..."
    echo "  Mod+Shift+Return = terminal"
    echo "  Mod+r            = run menu"
    echo "  Mod+b            = browser"
    echo "  Mod+Shift+q      = quit"
    echo ""

    # Launch velox via swc-launch (handles DRM access)
    swc-launch velox
else
    # Console mode - start a shell
    echo ""
    echo "Welcome to Oasis Linux"
    echo "Type 'exit' to power off."
    echo ""
    /bin/ksh -l
fi

# Clean shutdown
echo "Powering off..."
sync
halt -p
'''

RUN_SCRIPT = r'''#!/bin/sh

# Oasis Linux QEMU launcher script
#
# Usage:
#   ./run           - Launch graphical desktop (if desktop build)
#   ./run -s        - Launch in serial/console mode (no graphics)
#   ./run -c        - Launch graphical window with console (no desktop WM)

SCRIPT_DIR="$(cd "$(dirname "$0")" && pwd)"
KERNEL="$SCRIPT_DIR/bzImage"
INITRD="$SCRIPT_DIR/initramfs.img.gz"

# Check for required files
if [ ! -f "$KERNEL" ]; then
    echo "Error: Kernel not found at $KERNEL"
    exit 1
fi

if [ ! -f "$INITRD" ]; then
    echo "Error: Initramfs not found at $INITRD"
    exit 1
fi

# Parse arguments
MODE="desktop"
for arg in "$@"; do
    case "$arg" in
        -s|--serial)
            MODE="serial"
            ;;
        -c|--console)
            MODE="console"
            ;;
        -h|--help)
            echo "Usage: $0 [-s|--serial] [-c|--console]"
            echo "  -s, --serial    Serial console (no graphics window)"
            echo "  -c, --console   Graphical window with console (no desktop WM)"
            echo "  (default)       Graphical desktop with velox WM"
            exit 0
            ;;
    esac
done

# Check for KVM support
KVM_OPTS=""
if [ -w /dev/kvm ]; then
    KVM_OPTS="-enable-kvm -cpu host"
else
    echo "Warning: KVM not available, using emulation (slower)"
fi

COMMON_OPTS="-m 1G $KVM_OPTS"
COMMON_OPTS="$COMMON_OPTS -kernel $KERNEL -initrd $INITRD"

case "$MODE" in
    serial)
        exec qemu-system-x86_64 \
            $COMMON_OPTS \
            -nographic \
            -append "console=ttyS0 rdinit=/init"
        ;;
    console)
        exec qemu-system-x86_64 \
            $COMMON_OPTS \
            -device virtio-gpu-pci \
            -device qemu-xhci,id=xhci \
            -device usb-kbd,bus=xhci.0 \
            -device usb-tablet,bus=xhci.0 \
            -append "console=tty0 rdinit=/init"
        ;;
    desktop)
        exec qemu-system-x86_64 \
            $COMMON_OPTS \
            -device virtio-gpu-pci \
            -device qemu-xhci,id=xhci \
            -device usb-kbd,bus=xhci.0 \
            -device usb-tablet,bus=xhci.0 \
            -append "console=tty0 rdinit=/init oasis.desktop"
        ;;
esac
'''

README = r'''# Oasis Linux QEMU Image

This directory contains a bootable Oasis Linux system for QEMU.

## Files

- `bzImage`          - Linux kernel
- `initramfs.img.gz` - Root filesystem (initramfs)
- `run`              - QEMU launch script

## Usage

```sh
# Graphical mode
./run

# Serial console mode (no graphics)
./run -s
```

## What is Oasis Linux?

Oasis is a small, statically-linked Linux distribution that uses:
- musl libc instead of glibc
- sbase/ubase instead of coreutils
- BearSSL instead of OpenSSL
- oksh instead of bash
- sinit instead of systemd

For more information, see: https://github.com/oasislinux/oasis

## Exiting QEMU

- Graphical mode: Close the window or press Ctrl+Alt+Q
- Serial mode: Press Ctrl+A, then X

## Build Information

This image was built using the automated build script.
Build fixes applied:
- Added -D_GNU_SOURCE for pipe2() support in host tools
- Fixed xz landlock syscall definitions (444, 445, 446)
- Automatic submodule reinitialization for race conditions
'''

ISOLINUX_CFG = """\
DEFAULT oasis
LABEL oasis
    KERNEL /boot/bzImage
    INITRD /boot/initramfs.img.gz
    APPEND rdinit=/init {append}
"""


def render_config_lua(desktop: bool = False) -> str:
    """Oasis config.lua selecting the core set, or core + desktop + extra + media."""
    return _CONFIG_LUA.format(fs=_FS_DESKTOP if desktop else _FS_CORE)


def render_isolinux_cfg(desktop: bool = False) -> str:
    return ISOLINUX_CFG.format(append="oasis.desktop" if desktop else "")


def make_executable(path: Path) -> None:
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def write_default_if_absent(path: Path, content: str, executable: bool = False) -> bool:
    """
    Write ``content`` to ``path`` unless the file already exists.

    Args:
        path: Config file path
        content: Default content
        executable: Mark the file executable when it is created

    Returns:
        True if the default was written, False if an existing file was kept
    """
    if path.exists():
        logger.info(f"Using existing config/{path.name}")
        return False

    logger.info(f"Generating default config/{path.name}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if executable:
        make_executable(path)
    return True
