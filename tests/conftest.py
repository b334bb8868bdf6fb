"""Test configuration and fixtures."""

from collections.abc import Iterator

import pytest
from sqlalchemy import Engine

from tests.utils.db_helper import create_test_engine


@pytest.fixture(autouse=True)
def _hermetic_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer .env files and RECON_* overrides out of tests."""
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")
    for name in (
        "RECON_NO_EGRESS",
        "RECON_MATCH_WINDOW_DAYS",
        "RECON_API_PAGE_SIZE",
        "RECON_API_MAX_PAGES",
        "RECON_API_TIMEOUT",
        "RECON_PLAIN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_engine() -> Iterator[Engine]:
    """In-memory SQLite engine with the schema applied."""
    engine = create_test_engine()
    yield engine
    engine.dispose()
