"""Pytest configuration and fixtures for oasisbuild tests"""

import logging
import sys
from pathlib import Path

import pytest

# Ensure src directory is in Python path before any imports
src_path = Path(__file__).resolve().parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep the developer's OASISBUILD_* and NO_COLOR settings out of the tests."""
    monkeypatch.delenv("OASISBUILD_LOG_LEVEL", raising=False)
    monkeypatch.delenv("NO_COLOR", raising=False)
    yield
    logger = logging.getLogger("oasisbuild")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
