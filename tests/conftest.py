"""Pytest configuration and fixtures."""

import logging
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import InMemoryCloud  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def cloud() -> InMemoryCloud:
    """Empty in-memory cloud."""
    return InMemoryCloud()


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """CLI tests install JSON handlers on the root logger; undo that."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
