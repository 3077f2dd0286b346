"""Shared pytest configuration: marker registration and run order."""

from __future__ import annotations

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: pure in-memory or single-document tests")
    config.addinivalue_line("markers", "integration: end-to-end loop and CLI tests on a temp project")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run unit tests before integration tests."""
    items.sort(key=lambda item: (1 if item.get_closest_marker("integration") else 0, item.nodeid))
