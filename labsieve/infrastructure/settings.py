"""Application Settings.

This module provides application-wide settings that sit beside the export
and notification configuration: application metadata and logging switches.

Security Impact:
    - Settings never hold credentials
    - Defaults are provided for development convenience
"""

import os

from labsieve import __version__

# Application metadata
APP_NAME = "Lab-Sieve"
APP_VERSION = __version__


class Settings:
    """Application settings loaded from environment variables with defaults."""

    def __init__(self):
        """Initialize settings from environment."""
        self.app_name = os.getenv("LS_APP_NAME", APP_NAME)
        self.log_level = os.getenv("LS_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("LS_LOG_JSON", "false").lower() == "true"
        self.report_title = os.getenv("LS_REPORT_TITLE", "Results of lab tests in sandbox")


# Global settings instance
settings = Settings()
