"""Credential records, setup input parsing and the JSON roster store.

The roster is the single source of truth for secret material. It is loaded
from disk at startup and on every reconstruction, and written back after any
mutation (refresh, enable/disable, setup).
"""

import secrets
import string
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import orjson
from structlog import get_logger

from account_rotator.config.discovery import get_config_dir
from account_rotator.core.timeutils import ms_to_iso, now_ms
from account_rotator.exceptions import InvalidCredentialInputError
from account_rotator.rotation.constants import (
    ACCOUNT_ID_SUFFIX_LENGTH,
    ONE_HOUR_MILLISECONDS,
)


logger = get_logger(__name__)

# Default credentials file path
DEFAULT_ACCOUNTS_PATH = get_config_dir() / "credentials.json"

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


@dataclass
class CredentialRecord:
    """One rotatable identity: OAuth token pair, expiry and metadata."""

    id: str
    access_token: str
    refresh_token: str
    expires_at: int  # Unix timestamp in milliseconds
    added_at: int = 0
    label: str | None = None
    enabled: bool = True

    def expires_in_seconds(self, now: int | None = None) -> int:
        """Seconds until the access token expires (negative if expired)."""
        if now is None:
            now = now_ms()
        return (self.expires_at - now) // 1000

    def expires_within(self, seconds: int, now: int | None = None) -> bool:
        """Check if the access token expires within ``seconds``."""
        if now is None:
            now = now_ms()
        return self.expires_at < now + seconds * 1000

    def display_name(self, index: int) -> str:
        """Label for messages, falling back to the 1-based roster position."""
        return self.label or f"#{index + 1}"

    def with_tokens(
        self, access_token: str, refresh_token: str, expires_at: int
    ) -> "CredentialRecord":
        """Copy of this record with refreshed token material."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "id": self.id,
            "access": self.access_token,
            "refresh": self.refresh_token,
            "expires": self.expires_at,
            "addedAt": self.added_at,
            "enabled": self.enabled,
        }
        if self.label:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            access_token=data["access"],
            refresh_token=data["refresh"],
            expires_at=int(data["expires"]),
            added_at=int(data.get("addedAt") or 0),
            label=data.get("label") or None,
            enabled=bool(data.get("enabled", True)),
        )

    def to_status(self, index: int, now: int | None = None) -> dict[str, Any]:
        """Read-only projection for status output (no token material)."""
        return {
            "id": self.id,
            "index": index,
            "label": self.display_name(index),
            "enabled": self.enabled,
            "addedAt": ms_to_iso(self.added_at) if self.added_at else None,
            "tokenExpiresAt": ms_to_iso(self.expires_at),
            "tokenExpiresIn": self.expires_in_seconds(now),
        }


def generate_account_id(now: int | None = None) -> str:
    """Generate a unique account id of the form ``acc_<ms>_<base36 suffix>``."""
    if now is None:
        now = now_ms()
    suffix = "".join(
        secrets.choice(_BASE36_ALPHABET) for _ in range(ACCOUNT_ID_SUFFIX_LENGTH)
    )
    return f"acc_{now}_{suffix}"


# ============================================================================
# Setup input parsing
# ============================================================================


@dataclass(frozen=True)
class OAuthJsonInput:
    """A full OAuth object pasted as JSON."""

    access_token: str
    refresh_token: str
    expires_at: int | None = None
    label: str | None = None
    kind: str = field(default="oauth", init=False)


@dataclass(frozen=True)
class BareTokenInput:
    """A single token, used as both access and refresh token."""

    token: str
    kind: str = field(default="token", init=False)


CredentialInput = OAuthJsonInput | BareTokenInput


def parse_credential_input(text: str) -> CredentialInput:
    """Parse setup input into a canonical credential input.

    Accepts a JSON object with ``refresh`` and ``access`` keys (optionally
    ``expires`` and ``label``), a JSON string, or a plain token.

    Raises:
        InvalidCredentialInputError: If the input is empty or a JSON value
            that is neither an OAuth object nor a string
    """
    try:
        parsed = orjson.loads(text)
    except orjson.JSONDecodeError:
        token = text.strip()
        if not token:
            raise InvalidCredentialInputError("Credential input is empty") from None
        return BareTokenInput(token=token)

    if isinstance(parsed, dict):
        access = parsed.get("access")
        refresh = parsed.get("refresh")
        if not (isinstance(access, str) and access and isinstance(refresh, str) and refresh):
            raise InvalidCredentialInputError(
                "OAuth JSON must contain non-empty 'access' and 'refresh' strings",
                details={"keys": sorted(parsed.keys())},
            )
        expires = parsed.get("expires")
        if expires is not None and not isinstance(expires, int | float):
            raise InvalidCredentialInputError(
                "OAuth JSON 'expires' must be a millisecond timestamp"
            )
        label = parsed.get("label")
        return OAuthJsonInput(
            access_token=access,
            refresh_token=refresh,
            expires_at=int(expires) if expires else None,
            label=label if isinstance(label, str) and label else None,
        )

    if isinstance(parsed, str) and parsed.strip():
        return BareTokenInput(token=parsed.strip())

    raise InvalidCredentialInputError(
        f"Unsupported credential input: expected OAuth object or token, got {type(parsed).__name__}"
    )


def build_credential_record(
    credential_input: CredentialInput,
    label: str | None = None,
    now: int | None = None,
) -> CredentialRecord:
    """Turn parsed setup input into a new roster entry.

    Tokens without an explicit expiry are assumed valid for one hour.
    """
    if now is None:
        now = now_ms()
    default_expiry = now + ONE_HOUR_MILLISECONDS

    match credential_input:
        case OAuthJsonInput():
            access = credential_input.access_token
            refresh = credential_input.refresh_token
            expires_at = credential_input.expires_at or default_expiry
            label = label or credential_input.label
        case BareTokenInput():
            access = refresh = credential_input.token
            expires_at = default_expiry

    return CredentialRecord(
        id=generate_account_id(now),
        access_token=access,
        refresh_token=refresh,
        expires_at=expires_at,
        added_at=now,
        label=label or None,
    )


# ============================================================================
# Roster store
# ============================================================================


class JsonRosterStore:
    """Loads and saves the credential roster as a JSON array."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path or DEFAULT_ACCOUNTS_PATH).expanduser()

    def load(self) -> list[CredentialRecord]:
        """Load the roster, skipping malformed entries.

        A missing or unreadable file yields an empty roster.
        """
        if not self.path.exists():
            logger.debug("accounts_file_missing", path=str(self.path))
            return []

        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.error("accounts_load_failed", path=str(self.path), error=str(e))
            return []

        if not isinstance(data, list):
            logger.error(
                "accounts_file_invalid",
                path=str(self.path),
                expected="array",
                got=type(data).__name__,
            )
            return []

        roster: list[CredentialRecord] = []
        for position, entry in enumerate(data):
            try:
                roster.append(CredentialRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "invalid_account_skipped",
                    position=position,
                    error=str(e),
                )

        logger.info("accounts_loaded", path=str(self.path), count=len(roster))
        return roster

    def save(self, roster: list[CredentialRecord]) -> bool:
        """Save the roster.

        Returns:
            True if saved successfully
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            # Write to temp file first, then rename
            temp_path = self.path.with_suffix(".json.tmp")
            with temp_path.open("wb") as f:
                f.write(
                    orjson.dumps(
                        [record.to_dict() for record in roster],
                        option=orjson.OPT_INDENT_2,
                    )
                )
            temp_path.chmod(0o600)
            temp_path.replace(self.path)

            logger.debug("accounts_saved", path=str(self.path), count=len(roster))
            return True

        except OSError as e:
            logger.error("accounts_save_failed", path=str(self.path), error=str(e))
            return False
