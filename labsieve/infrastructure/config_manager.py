"""Configuration Manager for Export and Notification Settings.

This module provides the configuration value objects handed to every
component at construction: the healthcare-records server endpoints, the
client and cohort identifiers, polling behavior and the SMTP notification
sink.

Security Impact:
    - SMTP passwords are stored as SecretStr and never logged
    - The signing key itself is never read here, only its location
    - Configuration is validated before use

Architecture:
    - Infrastructure layer isolated from the domain
    - Supports environment variables (with .env loading) and JSON files
    - Type-safe configuration using Pydantic models
    - Fail-fast validation raises ConfigurationError
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from labsieve.domain.ports import ConfigurationError

logger = logging.getLogger(__name__)

JWT_BEARER_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


class ExportConfig(BaseModel):
    """Server endpoints, identifiers and polling behavior for one run.

    Parameters:
        client_id: Registered client identifier (issuer and subject of assertions)
        token_endpoint: OAuth2 token endpoint URL (also the assertion audience)
        fhir_base_url: FHIR server base URL
        group_id: Cohort (Group) identifier to export
        key_store_path: Path to the JSON Web Key Set holding the signing key
        key_algorithm: Signing algorithm used when the key does not declare one
        assertion_lifetime_minutes: Validity window of each assertion
        export_types: Comma-separated resource types for ``_type``
        type_filter: Type-scoped filter expression for ``_typeFilter``
        poll_interval_seconds: Fixed delay between status polls
        max_poll_attempts: Optional ceiling on status polls (None = unbounded)
        request_timeout_seconds: Per-request network timeout
    """

    client_id: str = Field(..., min_length=1, description="Client identifier")
    token_endpoint: str = Field(..., description="OAuth2 token endpoint URL")
    fhir_base_url: str = Field(..., description="FHIR server base URL")
    group_id: str = Field(..., min_length=1, description="Cohort Group identifier")
    key_store_path: str = Field(..., min_length=1, description="JWKS file location")
    key_algorithm: str = Field(default="RS384")
    assertion_lifetime_minutes: float = Field(default=4, gt=0)
    export_types: str = Field(default="Patient,Observation")
    type_filter: Optional[str] = Field(default="Observation?category=laboratory")
    poll_interval_seconds: float = Field(default=30.0, ge=0)
    max_poll_attempts: Optional[int] = Field(default=None, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("token_endpoint", "fhir_base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require absolute http(s) URLs and drop trailing slashes."""
        if not v.startswith(("https://", "http://")):
            raise ValueError(f"Expected an http(s) URL, got: {v}")
        return v.rstrip("/")

    @property
    def export_url(self) -> str:
        return f"{self.fhir_base_url}/Group/{self.group_id}/$export"


class NotificationConfig(BaseModel):
    """SMTP settings for delivering the report.

    Parameters:
        smtp_host: SMTP server host
        smtp_port: SMTP server port
        smtp_username: Login user (optional)
        smtp_password: Login password (SecretStr - never logged)
        use_tls: Upgrade the connection with STARTTLS
        sender: From address
        recipients: To addresses
        subject_prefix: Subject prefix, followed by the run date
    """

    smtp_host: Optional[str] = None
    smtp_port: int = Field(default=587, gt=0)
    smtp_username: Optional[str] = None
    smtp_password: Optional[SecretStr] = None
    use_tls: bool = True
    sender: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    subject_prefix: str = "Lab Reports on"

    @field_validator("recipients", mode="before")
    @classmethod
    def split_recipients(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [r.strip() for r in v.split(",") if r.strip()]
        return v or []

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_host and self.sender and self.recipients)


class ConfigManager:
    """Configuration manager for export and notification settings.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        export_config = config.get_export_config()

        config = ConfigManager.from_file("labsieve.json")
        notification_config = config.get_notification_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with ``export`` and ``notification`` sections
        """
        self._config_data = config_data
        self._export_config: Optional[ExportConfig] = None
        self._notification_config: Optional[NotificationConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - LS_CLIENT_ID, LS_TOKEN_ENDPOINT, LS_FHIR_BASE_URL, LS_GROUP_ID
            - LS_KEY_STORE_PATH, LS_KEY_ALGORITHM, LS_ASSERTION_LIFETIME_MINUTES
            - LS_EXPORT_TYPES, LS_TYPE_FILTER
            - LS_POLL_INTERVAL_SECONDS, LS_MAX_POLL_ATTEMPTS, LS_REQUEST_TIMEOUT_SECONDS
            - LS_SMTP_HOST, LS_SMTP_PORT, LS_SMTP_USER, LS_SMTP_PASSWORD (secret), LS_SMTP_TLS
            - LS_EMAIL_FROM, LS_EMAIL_TO (comma-separated), LS_EMAIL_SUBJECT_PREFIX

        Parameters:
            env_file: Optional .env path (defaults to ``.env`` in the working directory)

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        export = {
            "client_id": os.getenv("LS_CLIENT_ID"),
            "token_endpoint": os.getenv("LS_TOKEN_ENDPOINT"),
            "fhir_base_url": os.getenv("LS_FHIR_BASE_URL"),
            "group_id": os.getenv("LS_GROUP_ID"),
            "key_store_path": os.getenv("LS_KEY_STORE_PATH", "keys.json"),
            "key_algorithm": os.getenv("LS_KEY_ALGORITHM"),
            "assertion_lifetime_minutes": os.getenv("LS_ASSERTION_LIFETIME_MINUTES"),
            "export_types": os.getenv("LS_EXPORT_TYPES"),
            "type_filter": os.getenv("LS_TYPE_FILTER"),
            "poll_interval_seconds": os.getenv("LS_POLL_INTERVAL_SECONDS"),
            "max_poll_attempts": os.getenv("LS_MAX_POLL_ATTEMPTS"),
            "request_timeout_seconds": os.getenv("LS_REQUEST_TIMEOUT_SECONDS"),
        }
        notification = {
            "smtp_host": os.getenv("LS_SMTP_HOST"),
            "smtp_port": os.getenv("LS_SMTP_PORT"),
            "smtp_username": os.getenv("LS_SMTP_USER"),
            "smtp_password": os.getenv("LS_SMTP_PASSWORD"),
            "use_tls": os.getenv("LS_SMTP_TLS"),
            "sender": os.getenv("LS_EMAIL_FROM"),
            "recipients": os.getenv("LS_EMAIL_TO"),
            "subject_prefix": os.getenv("LS_EMAIL_SUBJECT_PREFIX"),
        }

        # Unset variables fall back to model defaults
        return cls({
            "export": {k: v for k, v in export.items() if v not in (None, "")},
            "notification": {k: v for k, v in notification.items() if v not in (None, "")},
        })

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            ConfigurationError: If the file is missing or not valid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for files holding SMTP credentials."
            )

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def with_overrides(self, section: str, **overrides: Any) -> 'ConfigManager':
        """Return a copy with non-None values replaced in ``section``."""
        data = {k: dict(v) if isinstance(v, dict) else v for k, v in self._config_data.items()}
        data.setdefault(section, {})
        data[section].update({k: v for k, v in overrides.items() if v is not None})
        return ConfigManager(data)

    def get_export_config(self) -> ExportConfig:
        """Get the validated export configuration.

        Raises:
            ConfigurationError: If identifiers or endpoints are missing or invalid
        """
        if self._export_config is None:
            try:
                self._export_config = ExportConfig(**self._config_data.get("export", {}))
            except PydanticValidationError as e:
                missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
                raise ConfigurationError(f"Invalid export configuration ({', '.join(missing)}): {e}")
        return self._export_config

    def get_notification_config(self) -> NotificationConfig:
        """Get the validated notification configuration.

        Raises:
            ConfigurationError: If the notification section is invalid
        """
        if self._notification_config is None:
            try:
                self._notification_config = NotificationConfig(**self._config_data.get("notification", {}))
            except PydanticValidationError as e:
                raise ConfigurationError(f"Invalid notification configuration: {e}")
        return self._notification_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated key (e.g. ``export.group_id``)."""
        value = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default
