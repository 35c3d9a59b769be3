"""Shared fixtures: every test gets its own data directory and database."""

from datetime import datetime, timedelta, timezone

import pytest

from provtrack.db import Database
from provtrack.log import configure_logging


@pytest.fixture(autouse=True, scope="session")
def _logging():
    """Use the app's logging setup instead of structlog's slow rich-traceback default."""
    configure_logging()


@pytest.fixture(autouse=True)
def provtrack_home(tmp_path, monkeypatch):
    """Point the data directory at a temp dir so nothing touches ~/.provtrack."""
    import provtrack.config as config

    home = tmp_path / "home"
    monkeypatch.setattr(config, "PROVTRACK_DIR", home)
    monkeypatch.setattr(config, "DB_PATH", home / "provtrack.db")
    return home


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


class FakeClock:
    """Settable UTC clock for expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()
