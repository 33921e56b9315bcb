"""In-memory branching event log.

Entries form a tree: each entry points at its parent and the log tracks one
active leaf. The active branch is the root-to-leaf path. Forking or switching
moves the leaf; new entries are appended under it.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

from structlog import get_logger

from account_rotator.core.timeutils import now_ms


logger = get_logger(__name__)


@dataclass(frozen=True)
class RotationRecord:
    """Opaque record handed to the event log after each action."""

    action: str
    state: dict[str, Any] | None
    message: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "action": self.action,
            "state": self.state,
            "message": self.message,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class LogEntry:
    """A record placed in the tree."""

    id: str
    parent_id: str | None
    record: RotationRecord
    timestamp: int = field(default_factory=now_ms)

    @property
    def state(self) -> dict[str, Any] | None:
        return self.record.state


class UnknownEntryError(KeyError):
    """Raised when forking or switching to an entry id that is not in the log."""


class BranchingEventLog:
    """Arena of log entries with a single active branch."""

    def __init__(self) -> None:
        self._entries: dict[str, LogEntry] = {}
        self._leaf_id: str | None = None

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def leaf_id(self) -> str | None:
        return self._leaf_id

    def get(self, entry_id: str) -> LogEntry | None:
        return self._entries.get(entry_id)

    def append(self, record: RotationRecord) -> LogEntry:
        """Append a record under the active leaf and make it the new leaf."""
        entry = LogEntry(
            id=uuid.uuid4().hex,
            parent_id=self._leaf_id,
            record=record,
        )
        self._entries[entry.id] = entry
        self._leaf_id = entry.id
        logger.debug("event_log_appended", entry=entry.id, action=record.action)
        return entry

    def switch(self, entry_id: str | None) -> None:
        """Make ``entry_id`` the active leaf (None starts a new root branch).

        Raises:
            UnknownEntryError: If the entry does not exist
        """
        if entry_id is not None and entry_id not in self._entries:
            raise UnknownEntryError(entry_id)
        self._leaf_id = entry_id
        logger.debug("event_log_switched", leaf=entry_id)

    def fork(self, entry_id: str) -> None:
        """Continue from an earlier entry; later appends start a sibling branch."""
        self.switch(entry_id)

    def branch(self) -> list[LogEntry]:
        """Entries on the active branch, oldest first."""
        path: list[LogEntry] = []
        entry_id = self._leaf_id
        while entry_id is not None:
            entry = self._entries[entry_id]
            path.append(entry)
            entry_id = entry.parent_id
        path.reverse()
        return path
