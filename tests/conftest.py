"""Shared pytest fixtures."""

from datetime import datetime, timezone

import pytest

from tech_roadmap.config import CONFIG_ENV_KEY, SECRET_ENV_KEY


@pytest.fixture(autouse=True)
def master_secret(monkeypatch, tmp_path):
    """Give every test a master secret and keep it away from the real config file."""
    monkeypatch.setenv(SECRET_ENV_KEY, "test-master-secret")
    monkeypatch.setenv(CONFIG_ENV_KEY, str(tmp_path / "config.toml"))
    return "test-master-secret"


class FakeClock:
    """Settable replacement for ``datetime.now(timezone.utc)``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta) -> None:
        self.current = self.current + delta


@pytest.fixture
def clock():
    return FakeClock()
