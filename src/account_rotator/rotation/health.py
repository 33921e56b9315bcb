"""Health scoring and soft quota detection.

A score summarises an account's recent reliability on a 0-100 scale. An
account with no quota record scores 100.
"""

from collections.abc import Mapping

from account_rotator.config.settings import RotationSettings
from account_rotator.core.timeutils import now_ms
from account_rotator.rotation.accounts import CredentialRecord
from account_rotator.rotation.constants import (
    ONE_HOUR_MILLISECONDS,
    ONE_MINUTE_MILLISECONDS,
    SOFT_QUOTA_MIN_REQUESTS,
)
from account_rotator.rotation.quota import QuotaRecord


MAX_SCORE = 100
MIN_SCORE = 0


def score(
    credential: CredentialRecord,
    quota_state: Mapping[str, QuotaRecord],
    settings: RotationSettings,
    now: int | None = None,
) -> int:
    """Score an account between 0 and 100."""
    quota = quota_state.get(credential.id)
    if quota is None:
        return MAX_SCORE
    if now is None:
        now = now_ms()

    weights = settings.health
    value: float = MAX_SCORE

    if quota.is_rate_limited(now):
        value -= weights.rate_limit_window_penalty

    if quota.last_rate_limit_at is not None:
        since_rate_limit = now - quota.last_rate_limit_at
        if since_rate_limit < ONE_HOUR_MILLISECONDS:
            minutes = since_rate_limit / ONE_MINUTE_MILLISECONDS
            value -= max(
                0.0,
                weights.recent_rate_limit_penalty
                - weights.recent_rate_limit_decay_per_minute * minutes,
            )

        if (
            quota.failure_count > 0
            and since_rate_limit <= settings.failure_ttl_seconds * 1000
        ):
            value -= min(
                weights.max_failure_penalty,
                quota.failure_count * weights.failure_penalty,
            )

    if (
        quota.last_success_at is not None
        and now - quota.last_success_at < ONE_MINUTE_MILLISECONDS
    ):
        value += weights.recent_success_bonus

    return max(MIN_SCORE, min(MAX_SCORE, round(value)))


def has_reached_soft_quota(
    credential: CredentialRecord,
    quota_state: Mapping[str, QuotaRecord],
    settings: RotationSettings,
    now: int | None = None,
) -> bool:
    """Check if an account should be skipped without being disabled.

    True inside an active rate limit window, or when the failure rate over at
    least ``SOFT_QUOTA_MIN_REQUESTS`` requests reaches the soft quota threshold.
    """
    quota = quota_state.get(credential.id)
    if quota is None:
        return False
    if now is None:
        now = now_ms()

    if quota.is_rate_limited(now):
        return True

    if quota.request_count < SOFT_QUOTA_MIN_REQUESTS:
        return False

    failure_rate = quota.failure_count / quota.request_count * 100
    return failure_rate >= settings.soft_quota_threshold_percent
