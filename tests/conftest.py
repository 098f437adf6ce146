"""
Pytest configuration and fixtures for ship tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator, List

from ship_cli.config import Constants, ShipConfig
from ship_cli.models import Change

from tests.fakes import FakePrHost, make_change


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for testing."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def ship_config() -> ShipConfig:
    return ShipConfig()


@pytest.fixture
def fake_pr_host() -> FakePrHost:
    return FakePrHost()


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    """Keep retry backoff out of test run time."""
    monkeypatch.setattr(Constants, "RETRY_BASE_DELAY", 0.0)


@pytest.fixture
def two_change_stack() -> List[Change]:
    """Stack with b1 closest to trunk and b2 on top (newest first)."""
    return [
        make_change("bbbbbbbb22", bookmarks=["b2"], description="Second change", is_working_copy=True),
        make_change("aaaaaaaa11", bookmarks=["b1"], description="First change"),
    ]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
