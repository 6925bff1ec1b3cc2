"""Configuration Manager for the FHIR Store, the Directory and the Sync Run.

This module loads and validates the configuration for a sync run. Directory
credentials are the only secrets; they are held as SecretStr and never logged.

Security Impact:
    - Credentials are never logged or exposed in error messages
    - Configuration is validated before any remote call is made
    - Prevents credential leakage in stack traces (SecretStr repr is masked)

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Supports environment variables (with .env files) and JSON files
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from directory_sync.domain.registry_id import RegistryId
from directory_sync.domain.services.star_model import DEFAULT_MIN_DONORS

logger = logging.getLogger(__name__)

ENV_PREFIX = "DS_"


def _validate_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError(f"URL must start with http:// or https://. Got: {v}")
    return v.rstrip("/")


class FhirConfig(BaseModel):
    """FHIR store connection settings.

    Parameters:
        base_url: FHIR base URL
        timeout: Per-request timeout in seconds
    """

    base_url: str = Field(default="http://localhost:8080/fhir", description="FHIR base URL")
    timeout: float = Field(default=30, gt=0, description="Request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return _validate_url(v)


class DirectoryConfig(BaseModel):
    """Directory connection settings with secure credential handling.

    Either username and password, or a pre-issued token, must be given.

    Security Impact:
        - Password and token are stored as SecretStr (never logged)

    Parameters:
        base_url: Directory base URL
        username: Directory user name
        password: Directory password (SecretStr - never logged)
        token: Pre-issued session token (SecretStr - never logged)
        timeout: Per-request timeout in seconds
    """

    base_url: str = Field(default="https://directory.bbmri-eric.eu", description="Directory base URL")
    username: Optional[str] = Field(None, description="Directory user name")
    password: Optional[SecretStr] = Field(None, description="Directory password (secret)")
    token: Optional[SecretStr] = Field(None, description="Pre-issued session token (secret)")
    timeout: float = Field(default=30, gt=0, description="Request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return _validate_url(v)

    @model_validator(mode="after")
    def validate_credentials(self) -> "DirectoryConfig":
        if self.token is None and not (self.username and self.password):
            raise ValueError("Directory requires either a token or both username and password")
        return self


class SyncConfig(BaseModel):
    """What to sync, and how.

    Parameters:
        default_collection_id: Collection for specimens without one
        min_donors: Donor threshold for star model facts (0 disables)
        diagnosis_available_enabled: Report diagnoses in collection attributes
        sync_sizes: Run the collection size sync
        sync_attributes: Run the collection attribute sync
        sync_star_model: Run the star model sync
        update_biobanks: Copy Directory biobank names to the FHIR store
    """

    default_collection_id: Optional[str] = Field(None, description="Default BBMRI-ERIC collection id")
    min_donors: int = Field(default=DEFAULT_MIN_DONORS, ge=0, description="Minimum donors per fact")
    diagnosis_available_enabled: bool = Field(default=False)
    sync_sizes: bool = Field(default=True)
    sync_attributes: bool = Field(default=False)
    sync_star_model: bool = Field(default=False)
    update_biobanks: bool = Field(default=True)

    @field_validator("default_collection_id")
    @classmethod
    def validate_default_collection_id(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        registry_id = RegistryId.parse(v)
        if registry_id is None or not registry_id.is_collection:
            raise ValueError(f"Invalid BBMRI-ERIC collection id: {v}")
        return v

    @property
    def default_registry_id(self) -> Optional[RegistryId]:
        return RegistryId.parse(self.default_collection_id)


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _drop_unset(data: Dict[str, Any]) -> Dict[str, Any]:
    """Remove unset values so model defaults apply."""
    return {key: value for key, value in data.items() if value is not None and value != ""}


class ConfigManager:
    """Configuration manager for the sync run.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        directory_config = config.get_directory_config()

        # Load from file
        config = ConfigManager.from_file("directory-sync.json")
        sync_config = config.get_sync_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._fhir_config: Optional[FhirConfig] = None
        self._directory_config: Optional[DirectoryConfig] = None
        self._sync_config: Optional[SyncConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> "ConfigManager":
        """Load configuration from environment variables.

        Environment Variables:
            - DS_FHIR_URL, DS_FHIR_TIMEOUT
            - DS_DIRECTORY_URL, DS_DIRECTORY_USER, DS_DIRECTORY_PASSWORD (secret),
              DS_DIRECTORY_TOKEN (secret), DS_DIRECTORY_TIMEOUT
            - DS_DEFAULT_COLLECTION_ID, DS_MIN_DONORS,
              DS_DIAGNOSIS_AVAILABLE_ENABLED, DS_SYNC_SIZES,
              DS_SYNC_ATTRIBUTES, DS_SYNC_STAR_MODEL, DS_UPDATE_BIOBANKS

        Parameters:
            env_file: .env file to load first (defaults to ./.env if present)

        Security Impact:
            - Credentials are read from environment (never logged)
            - Variables already set in the environment win over the .env file
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        config_data = {
            "fhir": _drop_unset({
                "base_url": os.getenv(f"{ENV_PREFIX}FHIR_URL"),
                "timeout": os.getenv(f"{ENV_PREFIX}FHIR_TIMEOUT"),
            }),
            "directory": _drop_unset({
                "base_url": os.getenv(f"{ENV_PREFIX}DIRECTORY_URL"),
                "username": os.getenv(f"{ENV_PREFIX}DIRECTORY_USER"),
                "password": os.getenv(f"{ENV_PREFIX}DIRECTORY_PASSWORD"),
                "token": os.getenv(f"{ENV_PREFIX}DIRECTORY_TOKEN"),
                "timeout": os.getenv(f"{ENV_PREFIX}DIRECTORY_TIMEOUT"),
            }),
            "sync": _drop_unset({
                "default_collection_id": os.getenv(f"{ENV_PREFIX}DEFAULT_COLLECTION_ID"),
                "min_donors": os.getenv(f"{ENV_PREFIX}MIN_DONORS"),
                "diagnosis_available_enabled": _env_bool(f"{ENV_PREFIX}DIAGNOSIS_AVAILABLE_ENABLED"),
                "sync_sizes": _env_bool(f"{ENV_PREFIX}SYNC_SIZES"),
                "sync_attributes": _env_bool(f"{ENV_PREFIX}SYNC_ATTRIBUTES"),
                "sync_star_model": _env_bool(f"{ENV_PREFIX}SYNC_STAR_MODEL"),
                "update_biobanks": _env_bool(f"{ENV_PREFIX}UPDATE_BIOBANKS"),
            }),
        }

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> "ConfigManager":
        """Load configuration from a JSON file with "fhir", "directory" and "sync" sections.

        Security Impact:
            - File permissions should be restricted (600) for credential files

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_fhir_config(self) -> FhirConfig:
        if self._fhir_config is None:
            self._fhir_config = FhirConfig(**self._config_data.get("fhir", {}))
        return self._fhir_config

    def get_directory_config(self) -> DirectoryConfig:
        """Get Directory configuration.

        Raises:
            pydantic.ValidationError: If neither a token nor credentials are set
        """
        if self._directory_config is None:
            self._directory_config = DirectoryConfig(**self._config_data.get("directory", {}))
        return self._directory_config

    def get_sync_config(self) -> SyncConfig:
        if self._sync_config is None:
            self._sync_config = SyncConfig(**self._config_data.get("sync", {}))
        return self._sync_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (dot notation, e.g. "sync.min_donors")."""
        value = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
