"""Exception hierarchy and failure codes for account rotation.

Rotation outcomes are reported as ``RotationFailure`` codes on a
``RotationResult`` rather than raised, so the host's event handler decides
whether to notify or retry. Exceptions are reserved for caller mistakes
(unknown account ids, unparseable credential input) and for collaborator
failures that the engine converts into failure codes.
"""

from enum import StrEnum
from typing import Any


class RotationFailure(StrEnum):
    """Failure codes returned by a rotation attempt."""

    NO_ENABLED_ACCOUNTS = "no_enabled_accounts"
    SINGLE_ACCOUNT_CANNOT_ROTATE = "single_account_cannot_rotate"
    PROVIDER_UPDATE_FAILURE = "provider_update_failure"
    MAX_ROTATION_DEPTH_EXCEEDED = "max_rotation_depth_exceeded"


# ============================================================================
# Base Exceptions
# ============================================================================


class RotationError(Exception):
    """Base exception for all account rotation errors.

    Carries a human readable message and optional structured details.
    """

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# Account Errors
# ============================================================================


class AccountNotFoundError(RotationError):
    """Raised when enabling or disabling an account id that is not in the roster."""

    def __init__(self, account_id: str) -> None:
        super().__init__(
            f"Account not found: {account_id}",
            details={"account_id": account_id},
        )
        self.account_id = account_id


class InvalidCredentialInputError(RotationError):
    """Raised when setup input cannot be parsed into credentials."""

    pass


# ============================================================================
# Collaborator Errors
# ============================================================================


class TokenRefreshError(RotationError):
    """Raised by refresh providers when a token refresh fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"status_code": status_code, "response_text": response_text},
        )
        self.status_code = status_code
        self.response_text = response_text


class ProviderUpdateError(RotationError):
    """Raised by credential sinks when the chosen credential cannot be installed."""

    pass


class ConfigurationError(RotationError):
    """Raised when configuration loading or validation fails."""

    pass


__all__ = [
    "AccountNotFoundError",
    "ConfigurationError",
    "InvalidCredentialInputError",
    "ProviderUpdateError",
    "RotationError",
    "RotationFailure",
    "TokenRefreshError",
]
