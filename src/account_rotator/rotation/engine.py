"""Rotation engine: owns the roster working copy and the mutable rotation state.

A rotation walks SelectingNext -> ValidatingExpiry -> (Refreshing) ->
UpdatingActiveCredential -> Succeeded/Failed. Refresh failures retry on
another account, bounded by ``MAX_ROTATION_DEPTH``. Every other outcome is
returned as a ``RotationResult``; nothing in ``rotate`` raises for expected
conditions.
"""

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from structlog import get_logger

from account_rotator.config.settings import RotationSettings, config_manager
from account_rotator.core.timeutils import ms_to_iso, now_ms
from account_rotator.exceptions import (
    AccountNotFoundError,
    ProviderUpdateError,
    RotationFailure,
    TokenRefreshError,
)
from account_rotator.rotation.accounts import CredentialRecord, JsonRosterStore
from account_rotator.rotation.constants import (
    MAX_ROTATION_DEPTH,
    REFRESH_BEFORE_EXPIRY_SECONDS,
)
from account_rotator.rotation.health import has_reached_soft_quota, score
from account_rotator.rotation.interfaces import (
    ConfigStore,
    CredentialSink,
    RefreshProvider,
    RosterStore,
)
from account_rotator.rotation.quota import QuotaLedger
from account_rotator.rotation.reconstruct import RotationState, reconstruct_state
from account_rotator.rotation.selection import (
    get_initial_index,
    next_enabled_index,
    select_next,
)


logger = get_logger(__name__)


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a rotation attempt."""

    success: bool
    new_index: int
    rotation_count: int
    message: str
    failure: RotationFailure | None = None
    account_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "newIndex": self.new_index,
            "rotationCount": self.rotation_count,
            "message": self.message,
            "failure": str(self.failure) if self.failure else None,
            "accountId": self.account_id,
        }


class RotationEngine:
    """Quota-aware account rotation over a persistent roster.

    All mutation happens on the caller's event stream; the engine holds no
    locks and performs no background work.
    """

    def __init__(
        self,
        roster_store: RosterStore,
        sink: CredentialSink,
        refresh_provider: RefreshProvider | None = None,
        settings: RotationSettings | None = None,
        config_store: ConfigStore | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.roster_store = roster_store
        self.sink = sink
        self.refresh_provider = refresh_provider
        self.config_store = config_store
        self.settings = settings or (
            config_store.load() if config_store else RotationSettings()
        )
        self._clock = clock

        self.roster: list[CredentialRecord] = []
        self.current_index = 0
        self.rotation_count = 0
        self.ledger = QuotaLedger(self.settings)
        self._enabled_cache: list[int] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: RotationSettings | None = None,
        *,
        sink: CredentialSink,
        refresh_provider: RefreshProvider | None = None,
    ) -> "RotationEngine":
        """Build an engine over the JSON roster at ``settings.accounts_path``.

        Without explicit settings the shared ``config_manager`` supplies them.
        """
        if settings is None:
            settings = config_manager.load_settings()
        return cls(
            roster_store=JsonRosterStore(settings.accounts_path),
            sink=sink,
            refresh_provider=refresh_provider,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load roster and settings and pick the initial account.

        Quota state starts empty.
        """
        self._reload_sources()
        self.current_index = get_initial_index(self.roster, self.settings)
        self.rotation_count = 0
        self.ledger.reset()
        logger.info(
            "rotation_engine_loaded",
            accounts=len(self.roster),
            enabled=len(self.enabled_indices),
            current_index=self.current_index,
            strategy=str(self.settings.strategy),
        )

    def _reload_sources(self) -> None:
        if self.config_store is not None:
            self.settings = self.config_store.load()
            self.ledger.settings = self.settings
        self.roster = self.roster_store.load()
        self.invalidate_selection_cache()

    def reconstruct(self, history: Iterable[Any]) -> RotationState:
        """Rebuild state from the active branch of the event log.

        The roster and settings are reloaded from their stores; only index,
        rotation count and quota records come from history.
        """
        self._reload_sources()
        base = RotationState(current_index=get_initial_index(self.roster, self.settings))
        state = reconstruct_state(history, base=base)

        if self.roster and not 0 <= state.current_index < len(self.roster):
            logger.warning(
                "reconstructed_index_out_of_range",
                index=state.current_index,
                accounts=len(self.roster),
            )
            state.current_index = base.current_index

        self.current_index = state.current_index
        self.rotation_count = state.rotation_count
        self.ledger.replace(state.quota_state)
        return self.snapshot()

    def snapshot(self) -> RotationState:
        """Copy of the current mutable state."""
        return RotationState(
            current_index=self.current_index,
            rotation_count=self.rotation_count,
            quota_state={
                account_id: record.copy()
                for account_id, record in self.ledger.records.items()
            },
        )

    # ------------------------------------------------------------------
    # Roster helpers
    # ------------------------------------------------------------------

    @property
    def enabled_indices(self) -> list[int]:
        if self._enabled_cache is None:
            self._enabled_cache = [
                i for i, credential in enumerate(self.roster) if credential.enabled
            ]
        return self._enabled_cache

    @property
    def enabled_count(self) -> int:
        return len(self.enabled_indices)

    @property
    def current_account(self) -> CredentialRecord | None:
        if 0 <= self.current_index < len(self.roster):
            return self.roster[self.current_index]
        return None

    def invalidate_selection_cache(self) -> None:
        self._enabled_cache = None

    def _find(self, account_id: str) -> int:
        for index, credential in enumerate(self.roster):
            if credential.id == account_id:
                return index
        raise AccountNotFoundError(account_id)

    def _persist_roster(self) -> None:
        if not self.roster_store.save(self.roster):
            logger.warning("roster_persist_failed", accounts=len(self.roster))

    # ------------------------------------------------------------------
    # Rotation state machine
    # ------------------------------------------------------------------

    def _failure(self, failure: RotationFailure, message: str) -> RotationResult:
        logger.warning(
            "rotation_failed",
            failure=str(failure),
            current_index=self.current_index,
            rotation_count=self.rotation_count,
        )
        return RotationResult(
            success=False,
            new_index=self.current_index,
            rotation_count=self.rotation_count,
            message=message,
            failure=failure,
        )

    async def rotate(
        self, force_rotate: bool = True, depth: int = 0, *, retrying: bool = False
    ) -> RotationResult:
        """Switch to the next account chosen by the configured strategy.

        Args:
            force_rotate: Move away from the current account even if healthy
            depth: Refresh-failure retry depth; callers leave this at 0
            retrying: Set on retries, whose failed account is already penalised
        """
        if depth >= MAX_ROTATION_DEPTH:
            return self._failure(
                RotationFailure.MAX_ROTATION_DEPTH_EXCEEDED,
                f"All {self.enabled_count} enabled account(s) may be rate limited",
            )

        now = self._clock()
        self.ledger.cleanup_expired_failures(now)

        enabled_count = self.enabled_count
        if enabled_count == 0:
            return self._failure(
                RotationFailure.NO_ENABLED_ACCOUNTS, "No enabled accounts"
            )
        if enabled_count == 1 and force_rotate:
            return self._failure(
                RotationFailure.SINGLE_ACCOUNT_CANNOT_ROTATE,
                "Only one account, cannot rotate",
            )

        previous_index = self.current_index
        previous = self.current_account
        if force_rotate and not retrying and previous is not None:
            self.ledger.record_rate_limit(previous.id, now)

        chosen = select_next(
            self.roster,
            previous_index,
            self.ledger.records,
            self.settings,
            force_rotate=force_rotate,
            now=now,
        )
        if force_rotate and chosen == previous_index and enabled_count > 1:
            chosen = next_enabled_index(self.roster, previous_index)
            logger.debug("rotation_force_advanced", index=chosen)

        self.rotation_count += 1
        self.current_index = chosen
        credential = self.roster[chosen]

        if credential.expires_within(REFRESH_BEFORE_EXPIRY_SECONDS, now):
            try:
                credential = await self._refresh(chosen)
            except Exception as e:
                # Any provider error is a refresh failure and retries elsewhere
                logger.warning(
                    "rotation_refresh_failed",
                    account=credential.id,
                    depth=depth,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.ledger.record_rate_limit(credential.id, self._clock())
                return await self.rotate(True, depth + 1, retrying=True)

        try:
            self.sink.apply(credential)
        except ProviderUpdateError as e:
            logger.error(
                "provider_update_failed",
                account=credential.id,
                error=str(e),
            )
            self.current_index = previous_index
            return self._failure(
                RotationFailure.PROVIDER_UPDATE_FAILURE,
                f"Failed to update provider credentials: {e.message}",
            )

        self.ledger.record_success(credential.id, self._clock())
        message = (
            f"Rotated to account {credential.display_name(chosen)} "
            f"({chosen + 1}/{len(self.roster)}) - rotation #{self.rotation_count}"
        )
        logger.info(
            "account_rotated",
            account=credential.id,
            previous_index=previous_index,
            index=chosen,
            rotation_count=self.rotation_count,
            depth=depth,
        )
        return RotationResult(
            success=True,
            new_index=chosen,
            rotation_count=self.rotation_count,
            message=message,
            account_id=credential.id,
        )

    async def _refresh(self, index: int) -> CredentialRecord:
        """Refresh the account at ``index`` and write it back to the roster.

        Raises:
            TokenRefreshError: If no provider is configured or the refresh fails
        """
        credential = self.roster[index]
        if self.refresh_provider is None:
            raise TokenRefreshError("No refresh provider configured")

        logger.info(
            "token_refresh_needed",
            account=credential.id,
            expires_in=credential.expires_in_seconds(self._clock()),
        )
        refreshed = await self.refresh_provider.refresh(credential.refresh_token)
        updated = credential.with_tokens(
            refreshed.access_token, refreshed.refresh_token, refreshed.expires_at
        )
        self.roster[index] = updated
        self._persist_roster()
        return updated

    def activate_current(self) -> bool:
        """Apply the current account to the sink without rotating.

        Returns:
            True if the sink accepted the credential
        """
        credential = self.current_account
        if credential is None:
            return False
        try:
            self.sink.apply(credential)
        except ProviderUpdateError as e:
            logger.error("provider_update_failed", account=credential.id, error=str(e))
            return False
        return True

    # ------------------------------------------------------------------
    # Tool-facing actions
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Roster, quota and score projection (no token material)."""
        now = self._clock()
        self.ledger.cleanup_expired_failures(now)
        current = self.current_account
        return {
            "totalAccounts": len(self.roster),
            "enabledAccounts": self.enabled_count,
            "currentIndex": self.current_index,
            "currentAccount": current.id if current else None,
            "rotationCount": self.rotation_count,
            "strategy": str(self.settings.strategy),
            "accounts": [
                {
                    **credential.to_status(index, now),
                    "current": index == self.current_index,
                    **self._quota_status(credential, now),
                }
                for index, credential in enumerate(self.roster)
            ],
        }

    def health(self) -> list[dict[str, Any]]:
        """Health scores for every account, in roster order."""
        now = self._clock()
        self.ledger.cleanup_expired_failures(now)
        return [
            {
                "id": credential.id,
                "label": credential.display_name(index),
                "enabled": credential.enabled,
                "current": index == self.current_index,
                **self._quota_status(credential, now),
            }
            for index, credential in enumerate(self.roster)
        ]

    def _quota_status(self, credential: CredentialRecord, now: int) -> dict[str, Any]:
        quota = self.ledger.get(credential.id)
        records = self.ledger.records
        return {
            "score": score(credential, records, self.settings, now),
            "softQuotaReached": has_reached_soft_quota(
                credential, records, self.settings, now
            ),
            "requestCount": quota.request_count if quota else 0,
            "failureCount": quota.failure_count if quota else 0,
            "rateLimitedUntil": ms_to_iso(quota.rate_limit_until) if quota else None,
            "lastSuccessAt": ms_to_iso(quota.last_success_at) if quota else None,
        }

    def set_enabled(self, account_id: str, enabled: bool) -> CredentialRecord:
        """Toggle an account and persist the roster.

        Raises:
            AccountNotFoundError: If no account has this id
        """
        index = self._find(account_id)
        credential = self.roster[index]
        credential.enabled = enabled
        self._persist_roster()
        self.invalidate_selection_cache()
        logger.info("account_enabled" if enabled else "account_disabled", account=account_id)
        return credential

    def enable(self, account_id: str) -> CredentialRecord:
        return self.set_enabled(account_id, True)

    def disable(self, account_id: str) -> CredentialRecord:
        return self.set_enabled(account_id, False)

    def reset(self) -> None:
        """Clear all quota records."""
        self.ledger.reset()

    def add_accounts(self, credentials: Sequence[CredentialRecord]) -> None:
        """Append accounts to the roster, persist, and restart at the initial account."""
        self.roster.extend(credentials)
        self._persist_roster()
        self.invalidate_selection_cache()
        self.current_index = get_initial_index(self.roster, self.settings)
        logger.info("accounts_added", added=len(credentials), total=len(self.roster))
