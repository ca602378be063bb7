"""
Pytest configuration for unit tests.
"""
import pytest
import sys
import os

# Ensure project root is in python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.configuration import PlanMonitorConfig, ConfigLoader


@pytest.fixture
def mock_config():
    """Default configuration, independent of any config.yaml on disk."""
    return PlanMonitorConfig()


@pytest.fixture
def reset_config_loader():
    ConfigLoader.reset()
    yield
    ConfigLoader.reset()
