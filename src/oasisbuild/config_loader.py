"""Configuration loader for per-build retry settings.

Loads the ``retry`` section of ``BUILD_DIR/oasisbuild.yaml`` with fallback to
the environment-driven defaults:

    retry:
      max_retries: 30
      retry_delay_seconds: 5
      tail_lines: 80
      missing_tool_warn_after: 3
      missing_tool_abort_after: 6
"""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .build_retry import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "oasisbuild.yaml"


class RetrySection(BaseModel):
    """Validated ``retry:`` section. Only keys present in the file are applied."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=0, ge=0)
    retry_delay_seconds: float = Field(default=0.0, ge=0)
    tail_lines: int = Field(default=0, ge=0)
    missing_tool_warn_after: int = Field(default=1, ge=1)
    missing_tool_abort_after: Optional[int] = Field(default=None, ge=1)


def load_retry_policy(build_dir: Path, max_retries: Optional[int] = None) -> RetryPolicy:
    """Load the retry policy for a build directory.

    Falls back to default values if:
    - File doesn't exist
    - File is malformed
    - The ``retry`` section is missing
    - A single setting is unknown, mistyped or out of range (that key only)

    Args:
        build_dir: Build directory that may contain oasisbuild.yaml
        max_retries: Command-line override, applied last

    Returns:
        RetryPolicy instance with loaded or default values
    """
    policy = RetryPolicy()
    config_path = Path(build_dir) / CONFIG_FILENAME

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Error loading {config_path}: {e}, using default retry policy")
            data = {}

        retry_data = data.get("retry") if isinstance(data, dict) else None
        if isinstance(retry_data, dict):
            section = _validate_section(retry_data, config_path)
            for key, value in section.model_dump(exclude_unset=True).items():
                setattr(policy, key, value)
        elif retry_data is not None:
            logger.warning(f"'retry' section in {config_path} is not a mapping, using defaults")

    if max_retries is not None:
        policy.max_retries = max_retries

    return policy


def _validate_section(retry_data: dict, config_path: Path) -> RetrySection:
    """Drop unknown or invalid keys with a warning and validate the rest."""
    known = {}
    for key, value in retry_data.items():
        if key in RetrySection.model_fields:
            known[key] = value
        else:
            logger.warning(f"Ignoring unknown retry setting '{key}' in {config_path}")

    try:
        return RetrySection.model_validate(known)
    except ValidationError as e:
        invalid = set()
        for error in e.errors():
            key = str(error["loc"][0]) if error["loc"] else ""
            invalid.add(key)
            logger.warning(f"Ignoring invalid retry setting '{key}' in {config_path}: {error['msg']}")
        return RetrySection.model_validate({k: v for k, v in known.items() if k not in invalid})
