"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from typing import Optional

from directory_sync.infrastructure.config_manager import ConfigManager


class Settings:
    """Application settings loaded from configuration manager and environment.

    Parameters:
        config_manager: Configuration source (defaults to the environment)
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config_manager = config_manager

        # Logging
        self.log_level = os.getenv("DS_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("DS_LOG_JSON", "false").lower() == "true"

        # Sync report settings
        self.save_sync_report = os.getenv("DS_SAVE_SYNC_REPORT", "false").lower() == "true"
        self.report_dir = os.getenv("DS_REPORT_DIR", "reports")

    @property
    def config_manager(self) -> ConfigManager:
        """Environment configuration, loaded (with .env) on first access."""
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager


# Global settings instance
settings = Settings()
