"""Tests for the rotation state machine and tool-facing engine actions."""

import json
from pathlib import Path

import httpx
import pytest

from account_rotator.config.settings import (
    ConfigurationManager,
    JsonConfigStore,
    RotationSettings,
)
from account_rotator.exceptions import AccountNotFoundError, RotationFailure
from account_rotator.rotation.accounts import JsonRosterStore
from account_rotator.rotation.constants import MAX_ROTATION_DEPTH
from account_rotator.rotation.engine import RotationEngine
from account_rotator.rotation.quota import QuotaRecord
from account_rotator.rotation.refresh import OAuthConfig, OAuthRefreshProvider
from tests.factories import (
    NOW,
    Clock,
    FakeRefreshProvider,
    RecordingSink,
    make_credential,
    write_roster,
)


def build_engine(
    path: Path,
    credentials,
    *,
    settings: RotationSettings | None = None,
    sink: RecordingSink | None = None,
    refresh_provider: FakeRefreshProvider | None = None,
) -> RotationEngine:
    write_roster(path, credentials)
    engine = RotationEngine(
        roster_store=JsonRosterStore(path),
        sink=sink or RecordingSink(),
        refresh_provider=refresh_provider or FakeRefreshProvider(),
        settings=settings or RotationSettings(),
        clock=Clock(),
    )
    engine.load()
    return engine


def invalid_expiry(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"access_token": "x", "expires_in": "soon"})


def undecodable_body(request: httpx.Request) -> httpx.Response:
    raise httpx.DecodingError("bad gzip", request=request)


@pytest.mark.unit
class TestRotate:
    """Tests for RotationEngine.rotate."""

    @pytest.mark.asyncio
    async def test_forced_hybrid_rotation_picks_first_best(
        self, engine: RotationEngine, sink: RecordingSink
    ) -> None:
        result = await engine.rotate(force_rotate=True)

        assert result.success is True
        assert result.new_index == 1
        assert result.rotation_count == 1
        assert result.account_id == "b"
        assert engine.current_index == 1
        assert [c.id for c in sink.applied] == ["b"]
        assert engine.ledger.get("a").failure_count == 1
        assert engine.ledger.get("b").request_count == 1

    @pytest.mark.asyncio
    async def test_rotation_count_increases_by_one_per_rotation(
        self, engine: RotationEngine
    ) -> None:
        await engine.rotate()
        await engine.rotate()

        assert engine.rotation_count == 2
        # a and b are rate limited now, c is the only healthy account
        assert engine.current_index == 2

    @pytest.mark.asyncio
    async def test_no_enabled_accounts(self, tmp_path: Path) -> None:
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential("a", enabled=False), make_credential("b", enabled=False)],
        )

        result = await engine.rotate()

        assert result.success is False
        assert result.failure == RotationFailure.NO_ENABLED_ACCOUNTS
        assert result.message == "No enabled accounts"
        assert engine.rotation_count == 0

    @pytest.mark.asyncio
    async def test_empty_roster(self, tmp_path: Path) -> None:
        engine = build_engine(tmp_path / "credentials.json", [])

        result = await engine.rotate()

        assert result.failure == RotationFailure.NO_ENABLED_ACCOUNTS

    @pytest.mark.asyncio
    async def test_single_account_cannot_rotate(self, tmp_path: Path) -> None:
        sink = RecordingSink()
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential("a"), make_credential("b", enabled=False)],
            sink=sink,
        )

        result = await engine.rotate(force_rotate=True)

        assert result.failure == RotationFailure.SINGLE_ACCOUNT_CANNOT_ROTATE
        assert result.message == "Only one account, cannot rotate"
        assert engine.rotation_count == 0
        assert engine.ledger.get("a") is None
        assert sink.applied == []

    @pytest.mark.asyncio
    async def test_single_account_unforced_reapplies(self, tmp_path: Path) -> None:
        sink = RecordingSink()
        engine = build_engine(tmp_path / "credentials.json", [make_credential("a")], sink=sink)

        result = await engine.rotate(force_rotate=False)

        assert result.success is True
        assert result.new_index == 0
        assert [c.id for c in sink.applied] == ["a"]

    @pytest.mark.asyncio
    async def test_sticky_unforced_keeps_current(self, tmp_path: Path) -> None:
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential("a"), make_credential("b")],
            settings=RotationSettings(strategy="sticky"),
        )

        result = await engine.rotate(force_rotate=False)

        assert result.new_index == 0
        assert engine.ledger.get("a").failure_count == 0

    @pytest.mark.asyncio
    async def test_force_advances_when_strategy_stays_put(self, tmp_path: Path) -> None:
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential("a"), make_credential("b")],
        )
        # b has tripped its soft quota, a gets rate limited by the forced rotation
        engine.ledger.replace({"b": QuotaRecord(request_count=10, failure_count=9)})

        result = await engine.rotate(force_rotate=True)

        assert result.success is True
        assert result.new_index == 1

    @pytest.mark.asyncio
    async def test_refreshes_expiring_credential(self, tmp_path: Path) -> None:
        path = tmp_path / "credentials.json"
        sink = RecordingSink()
        provider = FakeRefreshProvider(expires_at=NOW + 3_600_000)
        engine = build_engine(
            path,
            [make_credential("a"), make_credential("b", expires_at=NOW + 30_000)],
            sink=sink,
            refresh_provider=provider,
        )

        result = await engine.rotate()

        assert result.success is True
        assert provider.calls == ["refresh-b"]
        assert sink.applied[-1].access_token == "refreshed-refresh-b"
        assert sink.applied[-1].expires_at == NOW + 3_600_000
        # Refreshed credential is written back to the roster store
        stored = {c.id: c for c in JsonRosterStore(path).load()}
        assert stored["b"].access_token == "refreshed-refresh-b"

    @pytest.mark.asyncio
    async def test_refresh_failure_retries_on_next_account(self, tmp_path: Path) -> None:
        provider = FakeRefreshProvider(fail=True)
        engine = build_engine(
            tmp_path / "credentials.json",
            [
                make_credential("a"),
                make_credential("b", expires_at=NOW - 1),
                make_credential("c"),
            ],
            refresh_provider=provider,
        )

        result = await engine.rotate()

        assert result.success is True
        assert result.new_index == 2
        assert result.rotation_count == 2
        assert provider.calls == ["refresh-b"]
        assert engine.ledger.get("b").failure_count == 1
        # The retry does not penalise the account it is rotating away from twice
        assert engine.ledger.get("a").failure_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_refresh_error_retries_on_next_account(
        self, tmp_path: Path
    ) -> None:
        provider = FakeRefreshProvider(error=RuntimeError("provider exploded"))
        engine = build_engine(
            tmp_path / "credentials.json",
            [
                make_credential("a"),
                make_credential("b", expires_at=NOW - 1),
                make_credential("c"),
            ],
            refresh_provider=provider,
        )

        result = await engine.rotate()

        assert result.success is True
        assert result.new_index == 2
        assert engine.ledger.get("b").failure_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("respond", [invalid_expiry, undecodable_body])
    async def test_oauth_refresh_errors_never_escape_rotate(
        self, tmp_path: Path, respond
    ) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(respond))
        provider = OAuthRefreshProvider(
            OAuthConfig(token_url="https://auth.example.test/token"),
            client=client,
            max_attempts=1,
        )
        engine = build_engine(
            tmp_path / "credentials.json",
            [
                make_credential("a"),
                make_credential("b", expires_at=NOW + 1000),
                make_credential("c"),
            ],
        )
        engine.refresh_provider = provider

        result = await engine.rotate(force_rotate=True)

        assert result.success is True
        assert result.new_index == 2
        assert engine.roster[1].access_token == "access-b"

    @pytest.mark.asyncio
    async def test_refresh_failures_bounded_by_max_depth(self, tmp_path: Path) -> None:
        provider = FakeRefreshProvider(fail=True)
        sink = RecordingSink()
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential(name, expires_at=NOW - 1) for name in ("a", "b", "c")],
            refresh_provider=provider,
            sink=sink,
        )

        result = await engine.rotate()

        assert result.success is False
        assert result.failure == RotationFailure.MAX_ROTATION_DEPTH_EXCEEDED
        assert result.message == "All 3 enabled account(s) may be rate limited"
        assert len(provider.calls) == MAX_ROTATION_DEPTH
        assert engine.rotation_count == MAX_ROTATION_DEPTH
        assert sink.applied == []

    @pytest.mark.asyncio
    async def test_depth_at_limit_fails_immediately(self, engine: RotationEngine) -> None:
        result = await engine.rotate(depth=MAX_ROTATION_DEPTH)

        assert result.failure == RotationFailure.MAX_ROTATION_DEPTH_EXCEEDED
        assert engine.rotation_count == 0

    @pytest.mark.asyncio
    async def test_missing_refresh_provider_counts_as_refresh_failure(
        self, tmp_path: Path
    ) -> None:
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential("a"), make_credential("b", expires_at=NOW), make_credential("c")],
        )
        engine.refresh_provider = None

        result = await engine.rotate()

        assert result.new_index == 2

    @pytest.mark.asyncio
    async def test_provider_update_failure_reverts_index(self, tmp_path: Path) -> None:
        engine = build_engine(
            tmp_path / "credentials.json",
            [make_credential("a"), make_credential("b")],
            sink=RecordingSink(fail=True),
        )

        result = await engine.rotate()

        assert result.success is False
        assert result.failure == RotationFailure.PROVIDER_UPDATE_FAILURE
        assert result.new_index == 0
        assert engine.current_index == 0
        assert engine.rotation_count == 1
        assert engine.ledger.get("b") is None

    @pytest.mark.asyncio
    async def test_cleanup_runs_before_selection(self, engine: RotationEngine) -> None:
        engine.ledger.replace(
            {
                "b": QuotaRecord(
                    last_rate_limit_at=NOW - 3601 * 1000,
                    rate_limit_until=NOW + 60_000,
                    failure_count=4,
                )
            }
        )

        result = await engine.rotate()

        assert result.new_index == 1
        assert engine.ledger.get("b").failure_count == 0


@pytest.mark.unit
class TestEngineActions:
    """Tests for status, health, enable/disable and reset."""

    def test_status_projection(self, engine: RotationEngine) -> None:
        status = engine.status()

        assert status["totalAccounts"] == 3
        assert status["enabledAccounts"] == 3
        assert status["currentAccount"] == "a"
        assert status["strategy"] == "hybrid"
        assert [a["current"] for a in status["accounts"]] == [True, False, False]
        assert all(a["score"] == 100 for a in status["accounts"])

    def test_health_reflects_quota(self, engine: RotationEngine) -> None:
        engine.ledger.record_rate_limit("a", now=NOW)

        health = {entry["id"]: entry for entry in engine.health()}

        assert health["a"]["score"] == 0
        assert health["a"]["softQuotaReached"] is True
        assert health["b"]["score"] == 100

    @pytest.mark.asyncio
    async def test_disable_persists_and_affects_selection(
        self, engine: RotationEngine, roster_path: Path
    ) -> None:
        engine.disable("b")

        stored = {c.id: c for c in JsonRosterStore(roster_path).load()}
        assert stored["b"].enabled is False
        assert engine.enabled_count == 2

        result = await engine.rotate()
        assert result.new_index == 2

    def test_enable_restores_account(self, engine: RotationEngine) -> None:
        engine.disable("c")
        engine.enable("c")

        assert engine.enabled_count == 3

    def test_unknown_account_raises(self, engine: RotationEngine) -> None:
        with pytest.raises(AccountNotFoundError):
            engine.disable("missing")

    def test_reset_clears_quota(self, engine: RotationEngine) -> None:
        engine.ledger.record_rate_limit("a", now=NOW)
        engine.ledger.record_success("b", now=NOW)

        engine.reset()

        assert len(engine.ledger) == 0


@pytest.mark.unit
class TestEngineReconstruct:
    """Tests for rebuilding engine state from history."""

    def test_replays_history_and_reloads_roster(
        self, engine: RotationEngine, roster_path: Path
    ) -> None:
        write_roster(
            roster_path,
            [make_credential("a"), make_credential("b"), make_credential("c", label="New")],
        )
        history = [
            {"state": {"currentIndex": 1, "rotationCount": 3, "quotaState": {
                "a": {"failureCount": 1, "lastRateLimitAt": NOW},
            }}},
            {"state": {"currentIndex": 2, "rotationCount": 4, "quotaState": {}}},
        ]

        state = engine.reconstruct(history)

        assert state.current_index == 2
        assert state.rotation_count == 4
        assert state.quota_state["a"].failure_count == 1
        assert engine.roster[2].label == "New"

    def test_out_of_range_index_falls_back(self, engine: RotationEngine) -> None:
        state = engine.reconstruct(
            [{"state": {"currentIndex": 7, "rotationCount": 9, "quotaState": {}}}]
        )

        assert state.current_index == 0
        assert state.rotation_count == 9

    def test_empty_history_resets_state(self, engine: RotationEngine) -> None:
        engine.rotation_count = 5
        engine.ledger.record_rate_limit("a", now=NOW)

        state = engine.reconstruct([])

        assert state.rotation_count == 0
        assert state.quota_state == {}


@pytest.mark.unit
def test_from_settings_uses_accounts_path(tmp_path: Path) -> None:
    path = write_roster(tmp_path / "pool.json", [make_credential("x"), make_credential("y")])

    engine = RotationEngine.from_settings(
        RotationSettings(accounts_path=path), sink=RecordingSink()
    )
    engine.load()

    assert [c.id for c in engine.roster] == ["x", "y"]


@pytest.mark.unit
def test_from_settings_defaults_to_config_manager(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = write_roster(tmp_path / "pool.json", [make_credential("m")])
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"accounts_path": str(path), "strategy": "sticky"}))
    manager = ConfigurationManager(JsonConfigStore(config_path))
    monkeypatch.setattr("account_rotator.rotation.engine.config_manager", manager)

    engine = RotationEngine.from_settings(sink=RecordingSink())
    engine.load()

    assert engine.settings is manager.load_settings()
    assert [c.id for c in engine.roster] == ["m"]
