"""Backoff wait policy applied before a forced rotation.

Waiting a little before leaving an account keeps caller-side caches warm;
after repeated failures the engine stops waiting and rotates immediately.
"""

from account_rotator.config.settings import RotationSettings
from account_rotator.rotation.constants import MAX_BACKOFF_EXPONENT
from account_rotator.rotation.quota import QuotaRecord


def calculate_wait_time(failure_count: int, settings: RotationSettings) -> float:
    """Exponential backoff in seconds, capped at ``max_wait_seconds``."""
    wait = settings.wait
    exponent = min(max(failure_count, 0), MAX_BACKOFF_EXPONENT)
    return min(wait.initial_wait_seconds * 2**exponent, wait.max_wait_seconds)


def should_wait_before_rotating(
    quota: QuotaRecord | None,
    settings: RotationSettings,
    enabled_count: int,
) -> bool:
    """Check if the engine should pause before rotating away from an account."""
    if not settings.wait.enabled or enabled_count <= 1:
        return False
    failure_count = quota.failure_count if quota else 0
    return failure_count < settings.wait.max_failures_before_skip
