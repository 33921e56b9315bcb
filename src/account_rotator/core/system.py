from pathlib import Path

import platformdirs


def get_xdg_config_home() -> Path:
    """Get the user config directory using platformdirs.

    Returns:
        Path to the user config directory (cross-platform).
    """
    return Path(platformdirs.user_config_dir())
