"""Pytest configuration for cfex tests.

Shared configuration for all test suites.
"""

import logging
import pathlib
import sys

import pytest

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Add project root to path for all tests to ensure imports work
PROJECT_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT / "src"))


@pytest.fixture
def engine_config():
    """Default engine options, independent of any user options file."""
    from cfex.core.config import EngineConfiguration

    return EngineConfiguration()


@pytest.fixture
def user_dir(tmp_path, monkeypatch):
    """Point the per-user cfex directory at a temporary location."""
    monkeypatch.setenv("CFEX_HOME", str(tmp_path))
    return tmp_path
