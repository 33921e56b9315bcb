"""Core utilities shared across account_rotator."""

from account_rotator.core.logging import setup_logging
from account_rotator.core.timeutils import ms_to_iso, now_ms


__all__ = [
    "ms_to_iso",
    "now_ms",
    "setup_logging",
]
