"""Environment loading for warden.

Centralizes config paths and dotenv loading. Call load_user_env() before
WardenConfig.from_env() so values from the user .env file are visible.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# User config directory (stores .env)
USER_CONFIG_DIR = Path.home() / ".config" / "warden"


def get_user_config_dir() -> Path:
    """User config directory, respecting WARDEN_CONFIG_DIR.

    Evaluated at call time so tests can redirect it.
    """
    return Path(os.environ.get("WARDEN_CONFIG_DIR", str(USER_CONFIG_DIR)))


def load_user_env() -> bool:
    """Load ${WARDEN_CONFIG_DIR}/.env (typically ~/.config/warden/.env).

    Variables already set in the process environment win.

    Returns:
        True if a .env file was found and loaded.
    """
    return load_dotenv(dotenv_path=get_user_config_dir() / ".env")
