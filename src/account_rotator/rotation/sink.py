"""Credential sink that keeps the active credential in memory."""

from collections.abc import Callable

from structlog import get_logger

from account_rotator.exceptions import ProviderUpdateError
from account_rotator.rotation.accounts import CredentialRecord


logger = get_logger(__name__)


class InMemoryCredentialSink:
    """Holds the active credential and optionally forwards it to a callback.

    The callback is how a host registers the credential with its HTTP client;
    any exception it raises is reported as a ``ProviderUpdateError``.
    """

    def __init__(self, on_apply: Callable[[CredentialRecord], None] | None = None):
        self._on_apply = on_apply
        self.active: CredentialRecord | None = None

    @property
    def api_key(self) -> str | None:
        """Bearer token of the active credential."""
        return self.active.access_token if self.active else None

    def apply(self, credential: CredentialRecord) -> None:
        if self._on_apply is not None:
            try:
                self._on_apply(credential)
            except Exception as e:
                raise ProviderUpdateError(
                    f"Failed to install credential {credential.id}: {e}",
                    details={"account_id": credential.id},
                ) from e

        self.active = credential
        logger.debug("credential_applied", account=credential.id)
