"""Shared fixtures for rotation tests."""

from pathlib import Path

import pytest

from account_rotator.config.settings import RotationSettings, SelectionStrategy
from account_rotator.rotation.accounts import JsonRosterStore
from account_rotator.rotation.engine import RotationEngine
from tests.factories import (
    Clock,
    FakeRefreshProvider,
    RecordingSink,
    make_credential,
    write_roster,
)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> RotationSettings:
    return RotationSettings(
        strategy=SelectionStrategy.HYBRID,
        failure_ttl_seconds=3600,
        soft_quota_threshold_percent=90,
        wait={"enabled": True, "initial_wait_seconds": 5, "max_wait_seconds": 60},
    )


@pytest.fixture
def roster_path(tmp_path: Path) -> Path:
    """Roster file with three healthy accounts a, b, c."""
    return write_roster(
        tmp_path / "credentials.json",
        [make_credential("a"), make_credential("b"), make_credential("c")],
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def refresh_provider() -> FakeRefreshProvider:
    return FakeRefreshProvider()


@pytest.fixture
def engine(
    roster_path: Path,
    sink: RecordingSink,
    refresh_provider: FakeRefreshProvider,
    settings: RotationSettings,
    clock: Clock,
) -> RotationEngine:
    engine = RotationEngine(
        roster_store=JsonRosterStore(roster_path),
        sink=sink,
        refresh_provider=refresh_provider,
        settings=settings,
        clock=clock,
    )
    engine.load()
    return engine
