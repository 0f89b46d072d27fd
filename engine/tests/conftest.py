"""
Pytest configuration and shared fixtures.
"""

import os

import pytest

# Import shared fixtures from api_fixtures
from tests.api_fixtures import *  # noqa: F403

# Set test environment variables before importing app modules
os.environ.setdefault("TECHANAL_ENV", "development")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure local TECHANAL_ overrides do not leak into tests."""
    for var in list(os.environ):
        if var.startswith("TECHANAL_") and var != "TECHANAL_ENV":
            monkeypatch.delenv(var, raising=False)
