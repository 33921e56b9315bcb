from pathlib import Path

from account_rotator.core.system import get_xdg_config_home


def find_config_file() -> Path | None:
    """Find the configuration file for account_rotator.

    Searches in the following order:
    1. .account_rotator.toml in current directory
    2. account_rotator.toml in current directory
    3. config.toml, then config.json, in the user config directory
    """
    config_dir = get_config_dir()
    candidates = [
        Path(".account_rotator.toml").resolve(),
        Path("account_rotator.toml").resolve(),
        config_dir / "config.toml",
        config_dir / "config.json",
    ]

    for candidate in candidates:
        if candidate.exists() and candidate.is_file():
            return candidate

    return None


def get_config_dir() -> Path:
    """Get the account_rotator configuration directory.

    Returns:
        Path to the configuration directory within the user config directory.
    """
    return get_xdg_config_home() / "account-rotator"
