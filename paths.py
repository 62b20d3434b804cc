"""
Where nimbridge keeps its settings file.

The only thing nimbridge writes to disk is the configuration record edited
through the admin API. It lives in a per-user state directory unless a CLI
flag or an environment variable points somewhere else.
"""

import os
from functools import lru_cache
from pathlib import Path

import platformdirs

SETTINGS_FILENAME = "settings.json"


@lru_cache(maxsize=1)
def get_state_home() -> Path:
    """
    Directory holding the settings file when nothing overrides it.

    ``NIMBRIDGE_STATE_HOME`` wins when set (handy for tests and containers);
    otherwise the platform's user state directory is used, e.g.
    ``~/.local/state/nimbridge`` on Linux or Termux.
    The directory is created lazily on the first save.
    """
    env_state_home = os.environ.get("NIMBRIDGE_STATE_HOME")
    if env_state_home:
        return Path(env_state_home)

    return Path(platformdirs.user_state_dir("nimbridge"))


def get_settings_path(override: str | None = None) -> Path:
    """
    Location of the persisted configuration record.

    Resolution order:
    1. override parameter (a state directory, from CLI --state-dir)
    2. NIMBRIDGE_SETTINGS_FILE environment variable (a full file path)
    3. <state home>/settings.json
    """
    if override:
        return Path(override) / SETTINGS_FILENAME

    env_settings_file = os.environ.get("NIMBRIDGE_SETTINGS_FILE")
    if env_settings_file:
        return Path(env_settings_file)

    return get_state_home() / SETTINGS_FILENAME


def ensure_dir(path: Path) -> Path:
    """Create the settings directory (and parents) before a save; returns ``path``."""
    path.mkdir(parents=True, exist_ok=True)
    return path
