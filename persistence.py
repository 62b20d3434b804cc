"""
Persistence of the gateway configuration record.

The record is a single JSON file (camelCase keys, same shape as the
``/api/config`` payload plus the credential). Writes go to a temp file
that is renamed into place while a file lock is held, so a concurrent
reader never sees a truncated file.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import ValidationError

from paths import ensure_dir, get_settings_path
from state import GatewayConfig

logger = logging.getLogger(__name__)


class SettingsFile:
    """Load and save the persisted ``GatewayConfig``."""

    def __init__(self, path: Path | None = None, lock_timeout: float = 10):
        """
        Args:
            path: Settings file location (None uses default from paths module)
            lock_timeout: Seconds to wait for the file lock
        """
        self.path = path or get_settings_path()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = FileLock(str(self.lock_path), timeout=lock_timeout)

    def load(self) -> GatewayConfig | None:
        """
        Read the persisted configuration.

        Returns:
            The stored configuration, or None if the file is absent or unusable
        """
        if not self.path.exists():
            return None

        try:
            with self._lock:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
            config = GatewayConfig.model_validate(data)
        except (json.JSONDecodeError, OSError, ValidationError, Timeout) as e:
            logger.warning(f"Ignoring unreadable settings file {self.path}: {e}")
            return None

        logger.info(f"Loaded settings from: {self.path}")
        return config

    def save(self, config: GatewayConfig) -> bool:
        """
        Write the configuration to disk.

        Returns:
            True on success, False if the file could not be written
        """
        data = config.model_dump(by_alias=True)
        try:
            ensure_dir(self.path.parent)
            with self._lock:
                temp_path = self.path.with_suffix(".tmp")
                with open(temp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                temp_path.replace(self.path)
        except (OSError, Timeout) as e:
            logger.error(f"Failed to save settings to {self.path}: {e}")
            return False
        return True

    async def load_async(self) -> GatewayConfig | None:
        return await asyncio.to_thread(self.load)

    async def save_async(self, config: GatewayConfig) -> bool:
        return await asyncio.to_thread(self.save, config)
