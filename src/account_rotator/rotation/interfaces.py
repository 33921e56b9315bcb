"""Collaborator interfaces consumed by the rotation engine."""

from typing import TYPE_CHECKING, Protocol, runtime_checkable


if TYPE_CHECKING:
    from account_rotator.config.settings import RotationSettings
    from account_rotator.rotation.accounts import CredentialRecord
    from account_rotator.rotation.event_log import LogEntry, RotationRecord
    from account_rotator.rotation.refresh import RefreshedCredentials


@runtime_checkable
class RosterStore(Protocol):
    """Persistent credential roster."""

    def load(self) -> list["CredentialRecord"]: ...

    def save(self, roster: list["CredentialRecord"]) -> bool: ...


@runtime_checkable
class ConfigStore(Protocol):
    """Persistent rotation settings."""

    def load(self) -> "RotationSettings": ...

    def save(self, settings: "RotationSettings") -> bool: ...


@runtime_checkable
class RefreshProvider(Protocol):
    """Exchanges a refresh token for fresh credentials.

    Implementations raise ``TokenRefreshError`` on failure.
    """

    async def refresh(self, refresh_token: str) -> "RefreshedCredentials": ...


@runtime_checkable
class CredentialSink(Protocol):
    """Installs the active credential for subsequent upstream calls.

    Implementations raise ``ProviderUpdateError`` on failure.
    """

    def apply(self, credential: "CredentialRecord") -> None: ...


@runtime_checkable
class EventLog(Protocol):
    """Append-only, branch-capable history of rotation records."""

    def append(self, record: "RotationRecord") -> "LogEntry": ...

    def branch(self) -> list["LogEntry"]: ...
