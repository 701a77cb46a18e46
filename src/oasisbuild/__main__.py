"""Main entry point for oasisbuild.

Usage:
    python -m oasisbuild build [--desktop] [BUILD_DIR]      # Build from source
    python -m oasisbuild customize [--desktop] [BUILD_DIR]  # Generate config files and exit
    python -m oasisbuild iso [BUILD_DIR]                    # Create .iso from an existing build
    python -m oasisbuild --version

BUILD_DIR defaults to ./oasis-linux. --desktop only affects the defaults
written to BUILD_DIR/config/; once a config file exists, your edits win.
"""

import argparse
import logging
import sys
from pathlib import Path

from .config_loader import load_retry_policy
from .exceptions import BuildFailedError, OasisBuildError
from .layout import BuildLayout
from .logging_config import configure_logging
from .pipeline import BuildPipeline

logger = logging.getLogger("oasisbuild")

DEFAULT_BUILD_DIR = "oasis-linux"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oasisbuild",
        description="oasisbuild - build a bootable Oasis Linux image for QEMU",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write a debug log to this file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_common(sub):
        sub.add_argument(
            "build_dir",
            nargs="?",
            default=DEFAULT_BUILD_DIR,
            type=Path,
            help=f"Where to build (default: ./{DEFAULT_BUILD_DIR})",
        )
        sub.add_argument(
            "--desktop",
            action="store_true",
            help="Include graphical desktop (velox WM, st terminal, netsurf browser)",
        )

    build_cmd = subparsers.add_parser("build", help="Build kernel and initramfs from source")
    add_common(build_cmd)
    build_cmd.add_argument(
        "--max-retries", type=int, default=None, help="Retry budget for the userland build (default: 20)"
    )

    customize_cmd = subparsers.add_parser("customize", help="Generate editable config files and exit")
    add_common(customize_cmd)

    iso_cmd = subparsers.add_parser("iso", help="Create a bootable .iso from an existing build")
    add_common(iso_cmd)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from .version import __version__

        print(f"oasisbuild {__version__}")
        return 0

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(log_level=args.log_level, log_file=args.log_file)

    layout = BuildLayout(args.build_dir)
    policy = load_retry_policy(layout.build_dir, max_retries=getattr(args, "max_retries", None))
    pipeline = BuildPipeline(layout, desktop=args.desktop, policy=policy)

    try:
        if args.command == "build":
            pipeline.run()
        elif args.command == "customize":
            pipeline.customize()
        elif args.command == "iso":
            pipeline.create_iso()
    except BuildFailedError as e:
        if e.result is not None:
            logger.error(f"Last {policy.tail_lines} lines of the build log are shown above; full log: {e.result.log_path}")
        else:
            logger.error(str(e))
        return 1
    except OasisBuildError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
