"""Per-account quota bookkeeping with TTL-based failure decay."""

from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from structlog import get_logger

from account_rotator.config.settings import RotationSettings
from account_rotator.core.timeutils import now_ms


logger = get_logger(__name__)


@dataclass
class QuotaRecord:
    """Recent failure and success counters for one account.

    Timestamps are Unix milliseconds.
    """

    last_rate_limit_at: int | None = None
    rate_limit_until: int | None = None
    request_count: int = 0
    failure_count: int = 0
    last_success_at: int | None = None

    def is_rate_limited(self, now: int) -> bool:
        """Check if ``now`` falls inside the active rate limit window."""
        return self.rate_limit_until is not None and now < self.rate_limit_until

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for snapshots."""
        return {
            "lastRateLimitAt": self.last_rate_limit_at,
            "rateLimitUntil": self.rate_limit_until,
            "requestCount": self.request_count,
            "failureCount": self.failure_count,
            "lastSuccessAt": self.last_success_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuotaRecord":
        """Create from a snapshot dictionary; missing fields take defaults."""
        return cls(
            last_rate_limit_at=data.get("lastRateLimitAt"),
            rate_limit_until=data.get("rateLimitUntil"),
            request_count=int(data.get("requestCount", 0)),
            failure_count=int(data.get("failureCount", 0)),
            last_success_at=data.get("lastSuccessAt"),
        )

    def copy(self) -> "QuotaRecord":
        return QuotaRecord(**asdict(self))


class QuotaLedger:
    """Owns the quota records keyed by account id.

    Records are created lazily on the first recorded event. Ids of accounts
    that were since removed from the roster may linger; lookups tolerate them.
    """

    def __init__(
        self,
        settings: RotationSettings,
        records: Mapping[str, QuotaRecord] | None = None,
    ):
        self.settings = settings
        self._records: dict[str, QuotaRecord] = dict(records or {})

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> Mapping[str, QuotaRecord]:
        """Read-only view of all records."""
        return self._records

    def get(self, account_id: str) -> QuotaRecord | None:
        return self._records.get(account_id)

    def _ensure(self, account_id: str) -> QuotaRecord:
        record = self._records.get(account_id)
        if record is None:
            record = QuotaRecord()
            self._records[account_id] = record
        return record

    def record_rate_limit(self, account_id: str, now: int | None = None) -> QuotaRecord:
        """Record a rate limit and open a rate limit window of ``max_wait_seconds``."""
        if now is None:
            now = now_ms()
        record = self._ensure(account_id)
        record.last_rate_limit_at = now
        record.rate_limit_until = now + int(self.settings.wait.max_wait_seconds * 1000)
        record.failure_count += 1
        logger.info(
            "account_rate_limit_recorded",
            account=account_id,
            failure_count=record.failure_count,
            rate_limit_until=record.rate_limit_until,
        )
        return record

    def record_success(self, account_id: str, now: int | None = None) -> QuotaRecord:
        """Record a successful use of an account."""
        if now is None:
            now = now_ms()
        record = self._ensure(account_id)
        record.last_success_at = now
        record.request_count += 1
        logger.debug(
            "account_success_recorded",
            account=account_id,
            request_count=record.request_count,
        )
        return record

    def cleanup_expired_failures(self, now: int | None = None) -> list[str]:
        """Forget failures older than the failure TTL.

        Records are zeroed, never deleted.

        Returns:
            Ids of the records that were reset
        """
        if now is None:
            now = now_ms()
        ttl_ms = self.settings.failure_ttl_seconds * 1000

        expired: list[str] = []
        for account_id, record in self._records.items():
            if record.failure_count <= 0 or record.last_rate_limit_at is None:
                continue
            if now - record.last_rate_limit_at > ttl_ms:
                record.failure_count = 0
                record.rate_limit_until = None
                expired.append(account_id)

        if expired:
            logger.debug("expired_failures_cleared", accounts=expired)
        return expired

    def reset(self) -> None:
        """Drop every quota record."""
        count = len(self._records)
        self._records.clear()
        logger.info("quota_state_reset", cleared=count)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Serializable copy of all records."""
        return {
            account_id: record.to_dict() for account_id, record in self._records.items()
        }

    def replace(self, records: Mapping[str, QuotaRecord]) -> None:
        """Replace all records with copies of ``records``."""
        self._records = {
            account_id: record.copy() for account_id, record in records.items()
        }
