"""Configuration module for oasisbuild settings.

Every value can be overridden through an ``OASISBUILD_``-prefixed environment
variable or a ``.env`` file in the working directory, e.g.
``OASISBUILD_MAX_RETRIES=5``.
"""

from __future__ import annotations

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="OASISBUILD_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Pinned upstream versions and sources
    kernel_version: str = "6.12"
    kernel_mirror: str = "https://cdn.kernel.org/pub/linux/kernel"
    toolchain_url: str = "http://musl.cc/x86_64-linux-musl-cross.tgz"
    toolchain_name: str = "x86_64-linux-musl-cross"
    oasis_repo: str = "https://github.com/oasislinux/oasis.git"
    oasis_etc_repo: str = "https://github.com/oasislinux/etc.git"

    # Known-good mirror for the package whose upstream host serves corrupt packs
    mirror_package: str = "pkg/mtdev"
    mirror_url: str = "https://github.com/rydberg/mtdev.git"
    mirror_probe_file: str = "configure.ac"

    # Git transfers abort if they drop below 1KB/s for 30 seconds
    git_low_speed_limit: int = 1000
    git_low_speed_time: int = 30

    # Download behaviour for toolchain and kernel archives
    download_connect_timeout: int = 30
    download_read_timeout: int = 300
    download_attempts: int = 3

    # Build-retry loop defaults
    max_retries: int = 20
    retry_delay_seconds: float = 2.0
    transcript_tail_lines: int = 50
    missing_tool_warn_after: int = 3

    # 0 means "use os.cpu_count()"
    jobs: int = 0

    # Warn when less than ~10GB is free next to the build directory
    min_free_disk_bytes: int = 10 * 1024 * 1024 * 1024


settings = Settings()


def get_parallel_jobs() -> int:
    """Return the worker count handed to ninja and make.

    Priority:
    1. settings.jobs when non-zero
    2. os.cpu_count()
    3. 1
    """
    if settings.jobs > 0:
        return settings.jobs
    return os.cpu_count() or 1
