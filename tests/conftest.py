"""Shared test fixtures."""

from pathlib import Path

import pytest

from taxshield.database.repository import Repository

# Tax-line table and rules used by the tests, independent of config/
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"


@pytest.fixture
def repo():
    """In-memory repository with the schema applied."""
    r = Repository(":memory:")
    r.apply_migrations()
    yield r
    r.close()
