"""Host-facing glue: rate limit detection, session events and tool actions.

The controller translates host events into engine calls and hands a record
of every action, with a state snapshot, to the event log.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from enum import StrEnum
from typing import Any

import orjson
from structlog import get_logger

from account_rotator.exceptions import AccountNotFoundError
from account_rotator.rotation.accounts import (
    build_credential_record,
    parse_credential_input,
)
from account_rotator.rotation.backoff import (
    calculate_wait_time,
    should_wait_before_rotating,
)
from account_rotator.rotation.engine import RotationEngine, RotationResult
from account_rotator.rotation.event_log import LogEntry, RotationRecord
from account_rotator.rotation.interfaces import EventLog


logger = get_logger(__name__)

# Substrings (lowercase) that mark an upstream error as a rate limit
RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "429",
    "rate limit",
    "quota exceeded",
    "resource_exhausted",
    "too many requests",
)


class SessionEvent(StrEnum):
    """Session lifecycle events that trigger state reconstruction."""

    START = "start"
    SWITCH = "switch"
    FORK = "fork"
    TREE = "tree"


class ToolAction(StrEnum):
    """Actions exposed to the host as a tool."""

    ROTATE = "rotate"
    STATUS = "status"
    HEALTH = "health"
    ENABLE = "enable"
    DISABLE = "disable"
    RESET = "reset"


Notifier = Callable[[str, str], None]
Sleeper = Callable[[float], Awaitable[None]]


def is_rate_limit_error(error: Any) -> bool:
    """Check if an upstream error looks like a rate limit.

    Strings are matched as-is (lowercased); other values are JSON encoded
    first so structured error payloads are searched too.
    """
    if not error:
        return False

    if isinstance(error, str):
        text = error.lower()
    elif isinstance(error, BaseException):
        text = str(error).lower()
    else:
        try:
            text = orjson.dumps(error, default=str).decode().lower()
        except TypeError:
            text = str(error).lower()

    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return True
    return "404" in text and "not found" in text


def _log_notification(message: str, level: str) -> None:
    if level == "error":
        logger.error("rotation_notice", message=message)
    elif level == "warning":
        logger.warning("rotation_notice", message=message)
    else:
        logger.info("rotation_notice", message=message, level=level)


class RotationController:
    """Connects a rotation engine to the host's events, tool and event log."""

    def __init__(
        self,
        engine: RotationEngine,
        event_log: EventLog | None = None,
        notify: Notifier | None = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.engine = engine
        self.event_log = event_log
        self.notify = notify or _log_notification
        self._sleep = sleep

    def _record(
        self, action: str, message: str, error: str | None = None
    ) -> LogEntry | None:
        if self.event_log is None:
            return None
        record = RotationRecord(
            action=action,
            state=self.engine.snapshot().to_dict(),
            message=message,
            error=error,
        )
        return self.event_log.append(record)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def on_session_event(self, event: SessionEvent | str) -> None:
        """Reconstruct engine state from the log's active branch."""
        event = SessionEvent(event)
        history = self.event_log.branch() if self.event_log is not None else []
        state = self.engine.reconstruct(history)
        logger.info(
            "rotation_state_reconciled",
            trigger=str(event),
            entries=len(history),
            current_index=state.current_index,
            rotation_count=state.rotation_count,
        )

    # ------------------------------------------------------------------
    # Upstream errors
    # ------------------------------------------------------------------

    async def on_model_error(self, error: Any) -> RotationResult | None:
        """Rotate away from the current account when a rate limit is reported.

        Returns None for errors that are not rate limits.
        """
        if not is_rate_limit_error(error):
            return None

        engine = self.engine
        self.notify("Rate limit detected. Attempting to rotate account...", "warning")

        current = engine.current_account
        quota = engine.ledger.get(current.id) if current else None
        if should_wait_before_rotating(quota, engine.settings, engine.enabled_count):
            wait_seconds = calculate_wait_time(
                quota.failure_count if quota else 0, engine.settings
            )
            logger.info(
                "rotation_backoff_wait",
                account=current.id if current else None,
                wait_seconds=wait_seconds,
            )
            await self._sleep(wait_seconds)

        result = await engine.rotate(force_rotate=True)
        self._record(
            ToolAction.ROTATE,
            result.message,
            None if result.success else str(result.failure),
        )

        if result.success:
            self.notify(result.message, "success")
        elif engine.roster:
            self.notify(
                f"All {engine.enabled_count} enabled account(s) may be rate limited. "
                "Please wait before retrying.",
                "error",
            )
        else:
            self.notify(result.message, "error")
        return result

    # ------------------------------------------------------------------
    # Tool actions
    # ------------------------------------------------------------------

    async def execute_tool(
        self, action: ToolAction | str, account_id: str | None = None
    ) -> dict[str, Any]:
        """Run a tool action and return ``{action, state, message, error?, data?}``."""
        action = ToolAction(action)
        engine = self.engine
        error: str | None = None
        data: Any = None

        match action:
            case ToolAction.ROTATE:
                result = await engine.rotate(force_rotate=True)
                message = result.message
                data = result.to_dict()
                if not result.success:
                    error = str(result.failure)
            case ToolAction.STATUS:
                data = engine.status()
                message = format_status(data)
            case ToolAction.HEALTH:
                data = engine.health()
                message = format_health(data)
            case ToolAction.ENABLE | ToolAction.DISABLE:
                if not account_id:
                    message = f"{action} requires an account id"
                    error = "missing_account_id"
                else:
                    try:
                        credential = engine.set_enabled(
                            account_id, action == ToolAction.ENABLE
                        )
                        message = f"Account {credential.label or credential.id} {action}d"
                    except AccountNotFoundError as e:
                        message = e.message
                        error = "account_not_found"
            case ToolAction.RESET:
                engine.reset()
                message = "Quota state reset"

        entry = self._record(action, message, error)
        response: dict[str, Any] = {
            "action": str(action),
            "state": entry.record.state if entry else engine.snapshot().to_dict(),
            "message": message,
        }
        if error:
            response["error"] = error
        if data is not None:
            response["data"] = data
        return response

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(
        self,
        inputs: Sequence[str],
        labels: Sequence[str | None] | None = None,
    ) -> int:
        """Add accounts from pasted credential input and activate the first account.

        Returns:
            Number of accounts added

        Raises:
            InvalidCredentialInputError: If any input cannot be parsed; no
                account is added in that case
        """
        labels = list(labels or [])
        records = [
            build_credential_record(
                parse_credential_input(text),
                label=labels[i] if i < len(labels) else None,
            )
            for i, text in enumerate(inputs)
        ]
        if not records:
            self.notify("No accounts configured. Setup cancelled.", "warning")
            return 0

        engine = self.engine
        engine.add_accounts(records)
        self._record(
            "setup", f"Setup complete: {len(engine.roster)} account(s)"
        )

        if engine.activate_current():
            current = engine.current_account
            label = current.display_name(engine.current_index) if current else "?"
            self.notify(
                f"Setup complete! {len(engine.roster)} account(s) configured. "
                f"Currently using {label}.",
                "success",
            )
        else:
            self.notify("Setup complete but failed to activate account", "warning")
        return len(records)


def format_status(status: dict[str, Any]) -> str:
    """Plain-text rendering of ``RotationEngine.status()``."""
    if not status["accounts"]:
        return "No accounts configured"

    lines = [f"{status['totalAccounts']} account(s) configured:"]
    for account in status["accounts"]:
        flags = []
        if account["current"]:
            flags.append("current")
        if not account["enabled"]:
            flags.append("disabled")
        suffix = f" ({', '.join(flags)})" if flags else ""
        lines.append(
            f"  {account['label']}{suffix} - score {account['score']}"
            f" - expires: {account['tokenExpiresAt']}"
        )
    lines.append("")
    lines.append(f"Rotations performed: {status['rotationCount']}")
    return "\n".join(lines)


def format_health(health: list[dict[str, Any]]) -> str:
    """Plain-text rendering of ``RotationEngine.health()``."""
    if not health:
        return "No accounts configured"
    return "\n".join(
        f"{account['label']}: {account['score']}/100"
        f" (requests {account['requestCount']}, failures {account['failureCount']}"
        f"{', soft quota' if account['softQuotaReached'] else ''})"
        for account in health
    )


__all__ = [
    "RATE_LIMIT_MARKERS",
    "RotationController",
    "SessionEvent",
    "ToolAction",
    "format_health",
    "format_status",
    "is_rate_limit_error",
]
