"""Shared test fixtures for Steward."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from steward.config.manager import ConfigManager
from steward.config.models import StewardConfig
from steward.db import create_all, create_engine, create_session_factory
from steward.engine import GovernanceEngine
from steward.governance.audit import InMemoryAuditLog

OWNER = "alice"
OTHER = "bob"
REVIEWER = "rita"
ADMIN = "ada"
SENIOR = "sam"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STEWARD_CONFIG", raising=False)
    monkeypatch.delenv("STEWARD_DATABASE_URL", raising=False)
    ConfigManager._reset_for_tests()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_log(clock: FakeClock) -> InMemoryAuditLog:
    return InMemoryAuditLog(clock=clock)


def make_config(**overrides: object) -> StewardConfig:
    data: dict[str, object] = {
        "budget": {"default_daily_ceiling": 100.0},
        "api": {
            "tokens": {
                "tok-alice": OWNER,
                "tok-bob": OTHER,
                "tok-rita": REVIEWER,
                "tok-sam": SENIOR,
                "tok-ada": ADMIN,
            },
            "reviewers": [REVIEWER],
            "reviewer_tiers": {SENIOR: 1},
            "admins": [ADMIN],
        },
    }
    data.update(overrides)
    return StewardConfig.model_validate(data)


@pytest.fixture
def config() -> StewardConfig:
    return make_config()


@pytest.fixture
def engine(config: StewardConfig, clock: FakeClock) -> GovernanceEngine:
    return GovernanceEngine(config, clock=clock)


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):  # type: ignore[no-untyped-def]
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'steward.db'}")
    await create_all(db_engine)
    try:
        yield create_session_factory(db_engine)
    finally:
        await db_engine.dispose()
