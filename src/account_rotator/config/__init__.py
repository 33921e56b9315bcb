"""Configuration for account_rotator."""

from account_rotator.config.settings import (
    ConfigurationManager,
    HealthSettings,
    JsonConfigStore,
    RotationSettings,
    SelectionStrategy,
    WaitSettings,
    config_manager,
    get_settings,
)


__all__ = [
    "ConfigurationManager",
    "HealthSettings",
    "JsonConfigStore",
    "RotationSettings",
    "SelectionStrategy",
    "WaitSettings",
    "config_manager",
    "get_settings",
]
