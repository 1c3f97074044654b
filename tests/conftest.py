"""Pytest configuration for warden tests."""

import os
from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    """Configure test environment before collection.

    Sets up environment variables to:
    - Keep the per-run debug log out of the working tree
    - Point the user config dir at /tmp so a developer's ~/.config/warden/.env
      cannot leak into tests
    """
    os.environ["WARDEN_DISABLE_DEBUG_LOG"] = "1"

    test_config_dir = Path("/tmp/warden-test-config")
    test_config_dir.mkdir(parents=True, exist_ok=True)
    os.environ["WARDEN_CONFIG_DIR"] = str(test_config_dir)


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Default unmarked tests to unit category."""
    for item in items:
        if any(marker in item.keywords for marker in ("unit", "integration")):
            continue
        item.add_marker(pytest.mark.unit)
