"""Selection strategies for choosing the active account.

All strategies operate only over enabled accounts and return a roster index.
"""

import os
from collections.abc import Mapping, Sequence

from structlog import get_logger

from account_rotator.config.settings import RotationSettings, SelectionStrategy
from account_rotator.core.timeutils import now_ms
from account_rotator.rotation.accounts import CredentialRecord
from account_rotator.rotation.constants import FORCED_ROTATION_PENALTY
from account_rotator.rotation.health import has_reached_soft_quota, score
from account_rotator.rotation.quota import QuotaRecord


logger = get_logger(__name__)


def enabled_indices(roster: Sequence[CredentialRecord]) -> list[int]:
    """Roster indices of enabled accounts, in order."""
    return [i for i, credential in enumerate(roster) if credential.enabled]


def next_enabled_index(roster: Sequence[CredentialRecord], current_index: int) -> int:
    """Scan forward circularly from ``current_index + 1`` for an enabled account.

    Returns ``current_index`` if no account is enabled.
    """
    size = len(roster)
    for step in range(1, size + 1):
        candidate = (current_index + step) % size
        if roster[candidate].enabled:
            return candidate
    return current_index


def _select_sticky(
    roster: Sequence[CredentialRecord], current_index: int, force_rotate: bool
) -> int:
    if (
        not force_rotate
        and 0 <= current_index < len(roster)
        and roster[current_index].enabled
    ):
        return current_index
    return next_enabled_index(roster, current_index)


def _select_hybrid(
    roster: Sequence[CredentialRecord],
    current_index: int,
    quota_state: Mapping[str, QuotaRecord],
    settings: RotationSettings,
    force_rotate: bool,
    now: int,
) -> int:
    best_index: int | None = None
    best_score = 0

    for index, credential in enumerate(roster):
        if not credential.enabled:
            continue
        if has_reached_soft_quota(credential, quota_state, settings, now):
            continue

        candidate_score = score(credential, quota_state, settings, now)
        if force_rotate and index == current_index:
            candidate_score -= FORCED_ROTATION_PENALTY

        # Strict comparison keeps the first index on ties
        if best_index is None or candidate_score > best_score:
            best_index = index
            best_score = candidate_score

    if best_index is None:
        logger.debug("hybrid_no_candidates", current_index=current_index)
        return current_index
    return best_index


def select_next(
    roster: Sequence[CredentialRecord],
    current_index: int,
    quota_state: Mapping[str, QuotaRecord],
    settings: RotationSettings,
    force_rotate: bool = False,
    now: int | None = None,
) -> int:
    """Choose the roster index of the next active account.

    Returns ``current_index`` unchanged when no account is enabled; callers
    must detect that case themselves.
    """
    enabled = enabled_indices(roster)
    if not enabled:
        return current_index
    if len(enabled) == 1:
        return enabled[0]

    if now is None:
        now = now_ms()

    match settings.strategy:
        case SelectionStrategy.STICKY:
            chosen = _select_sticky(roster, current_index, force_rotate)
        case SelectionStrategy.ROUND_ROBIN:
            chosen = next_enabled_index(roster, current_index)
        case _:
            chosen = _select_hybrid(
                roster, current_index, quota_state, settings, force_rotate, now
            )

    logger.debug(
        "account_selected",
        strategy=str(settings.strategy),
        previous_index=current_index,
        index=chosen,
        forced=force_rotate,
    )
    return chosen


def get_initial_index(
    roster: Sequence[CredentialRecord],
    settings: RotationSettings,
    pid: int | None = None,
) -> int:
    """Index of the account to start with.

    With PID offset enabled, the process id picks among enabled accounts so
    parallel processes sharing a roster start on different accounts.
    """
    enabled = enabled_indices(roster)
    if not enabled:
        return 0

    if settings.pid_offset:
        if pid is None:
            pid = os.getpid()
        offset = pid % len(enabled)
        logger.debug("pid_offset_applied", pid=pid, offset=offset)
        return enabled[offset]

    return enabled[0]
