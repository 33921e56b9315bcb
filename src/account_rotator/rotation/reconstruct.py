"""Rebuild rotation state by replaying snapshots from the active branch.

Only ``currentIndex``, ``rotationCount`` and ``quotaState`` are replayed. The
credential roster is never read from history; it always comes from the
roster store so that forking or rewinding cannot resurrect stale secrets.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from structlog import get_logger

from account_rotator.rotation.quota import QuotaRecord


logger = get_logger(__name__)


@dataclass
class RotationState:
    """Mutable engine state; the unit of persistence and replay."""

    current_index: int = 0
    rotation_count: int = 0
    quota_state: dict[str, QuotaRecord] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for the event log."""
        return {
            "currentIndex": self.current_index,
            "rotationCount": self.rotation_count,
            "quotaState": {
                account_id: record.to_dict()
                for account_id, record in self.quota_state.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RotationState":
        quota = data.get("quotaState") or {}
        return cls(
            current_index=int(data.get("currentIndex", 0)),
            rotation_count=int(data.get("rotationCount", 0)),
            quota_state={
                account_id: QuotaRecord.from_dict(record)
                for account_id, record in quota.items()
            },
        )


def extract_snapshot(entry: Any) -> Mapping[str, Any] | None:
    """Pull the embedded state snapshot out of a history entry.

    Accepts log entries exposing ``state``, plain mappings with a ``state``
    key, and mappings that nest it under ``details``.
    """
    if isinstance(entry, Mapping):
        snapshot = entry.get("state")
        if snapshot is None and isinstance(entry.get("details"), Mapping):
            snapshot = entry["details"].get("state")
    else:
        snapshot = getattr(entry, "state", None)

    if not isinstance(snapshot, Mapping):
        return None
    if "currentIndex" not in snapshot or "rotationCount" not in snapshot:
        return None
    return snapshot


def reconstruct_state(
    entries: Iterable[Any], base: RotationState | None = None
) -> RotationState:
    """Replay snapshots oldest to newest.

    Each snapshot overwrites the index and rotation count. Quota records merge
    per account id: the latest snapshot mentioning an id wins, ids absent from
    a snapshot keep their previously merged value.
    """
    state = RotationState(
        current_index=base.current_index if base else 0,
        rotation_count=base.rotation_count if base else 0,
        quota_state={
            account_id: record.copy()
            for account_id, record in (base.quota_state.items() if base else ())
        },
    )

    replayed = 0
    for entry in entries:
        snapshot = extract_snapshot(entry)
        if snapshot is None:
            continue

        state.current_index = int(snapshot["currentIndex"])
        state.rotation_count = int(snapshot["rotationCount"])
        for account_id, record in (snapshot.get("quotaState") or {}).items():
            state.quota_state[account_id] = QuotaRecord.from_dict(record)
        replayed += 1

    logger.debug(
        "rotation_state_reconstructed",
        snapshots=replayed,
        current_index=state.current_index,
        rotation_count=state.rotation_count,
        quota_entries=len(state.quota_state),
    )
    return state
