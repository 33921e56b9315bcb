"""Quota-aware account rotation.

Rotates among a pool of OAuth accounts for one upstream API so that a rate
limit on one account does not stall the caller.
"""

from account_rotator.rotation.accounts import (
    CredentialRecord,
    JsonRosterStore,
    parse_credential_input,
)
from account_rotator.rotation.engine import RotationEngine, RotationResult
from account_rotator.rotation.event_log import BranchingEventLog, RotationRecord
from account_rotator.rotation.events import (
    RotationController,
    SessionEvent,
    ToolAction,
    is_rate_limit_error,
)
from account_rotator.rotation.quota import QuotaLedger, QuotaRecord
from account_rotator.rotation.reconstruct import RotationState, reconstruct_state
from account_rotator.rotation.refresh import OAuthRefreshProvider, RefreshedCredentials
from account_rotator.rotation.sink import InMemoryCredentialSink


__all__ = [
    "BranchingEventLog",
    "CredentialRecord",
    "InMemoryCredentialSink",
    "JsonRosterStore",
    "OAuthRefreshProvider",
    "QuotaLedger",
    "QuotaRecord",
    "RefreshedCredentials",
    "RotationController",
    "RotationEngine",
    "RotationRecord",
    "RotationResult",
    "RotationState",
    "SessionEvent",
    "ToolAction",
    "is_rate_limit_error",
    "parse_credential_input",
    "reconstruct_state",
]
