"""Tests for the configuration manager.

Security Impact:
    - Verifies secrets are held as SecretStr and masked in repr
    - Verifies invalid configuration fails before any remote call
"""

import json
import os

import pytest
from pydantic import ValidationError

from directory_sync.infrastructure.config_manager import (
    ConfigManager,
    DirectoryConfig,
    FhirConfig,
    SyncConfig,
)

COLLECTION_ID = "bbmri-eric:ID:DE_12:collection:0"

ENV_VARS = [
    "DS_FHIR_URL", "DS_FHIR_TIMEOUT", "DS_DIRECTORY_URL", "DS_DIRECTORY_USER", "DS_DIRECTORY_PASSWORD",
    "DS_DIRECTORY_TOKEN", "DS_DIRECTORY_TIMEOUT", "DS_DEFAULT_COLLECTION_ID", "DS_MIN_DONORS",
    "DS_DIAGNOSIS_AVAILABLE_ENABLED", "DS_SYNC_SIZES", "DS_SYNC_ATTRIBUTES", "DS_SYNC_STAR_MODEL",
    "DS_UPDATE_BIOBANKS",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # load_dotenv writes to os.environ directly
    monkeypatch.setattr(os, "environ", os.environ.copy())
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path / ".env"


class TestModels:
    """Test suite for the configuration models."""

    def test_fhir_defaults(self):
        config = FhirConfig()
        assert config.base_url == "http://localhost:8080/fhir"
        assert config.timeout == 30

    def test_trailing_slash_is_stripped(self):
        assert FhirConfig(base_url="https://blaze.test/fhir/").base_url == "https://blaze.test/fhir"

    def test_url_scheme_is_required(self):
        with pytest.raises(ValidationError):
            FhirConfig(base_url="blaze.test/fhir")

    def test_directory_requires_credentials(self):
        with pytest.raises(ValidationError):
            DirectoryConfig(username="user")

    def test_directory_token_alone_is_enough(self):
        config = DirectoryConfig(token="abc")
        assert config.token.get_secret_value() == "abc"

    def test_password_is_masked(self):
        config = DirectoryConfig(username="user", password="hunter2")
        assert "hunter2" not in repr(config)
        assert config.password.get_secret_value() == "hunter2"

    def test_sync_defaults(self):
        config = SyncConfig()
        assert config.min_donors == 10
        assert config.diagnosis_available_enabled is False
        assert config.sync_sizes is True
        assert config.sync_attributes is False
        assert config.sync_star_model is False
        assert config.update_biobanks is True
        assert config.default_registry_id is None

    def test_default_collection_must_be_a_collection(self):
        with pytest.raises(ValidationError):
            SyncConfig(default_collection_id="bbmri-eric:ID:DE_12")
        with pytest.raises(ValidationError):
            SyncConfig(default_collection_id="collection-0")

    def test_default_collection(self):
        config = SyncConfig(default_collection_id=COLLECTION_ID)
        assert str(config.default_registry_id) == COLLECTION_ID

    def test_negative_threshold_is_rejected(self):
        with pytest.raises(ValidationError):
            SyncConfig(min_donors=-1)


class TestFromEnvironment:
    """Test suite for ConfigManager.from_environment."""

    def test_reads_prefixed_variables(self, clean_env, monkeypatch):
        monkeypatch.setenv("DS_FHIR_URL", "https://blaze.test/fhir")
        monkeypatch.setenv("DS_DIRECTORY_USER", "user")
        monkeypatch.setenv("DS_DIRECTORY_PASSWORD", "secret")
        monkeypatch.setenv("DS_DEFAULT_COLLECTION_ID", COLLECTION_ID)
        monkeypatch.setenv("DS_MIN_DONORS", "5")
        monkeypatch.setenv("DS_SYNC_STAR_MODEL", "true")
        monkeypatch.setenv("DS_SYNC_SIZES", "0")

        config = ConfigManager.from_environment(env_file=str(clean_env))

        assert config.get_fhir_config().base_url == "https://blaze.test/fhir"
        assert config.get_directory_config().username == "user"
        sync_config = config.get_sync_config()
        assert sync_config.default_collection_id == COLLECTION_ID
        assert sync_config.min_donors == 5
        assert sync_config.sync_star_model is True
        assert sync_config.sync_sizes is False

    def test_unset_variables_use_defaults(self, clean_env):
        config = ConfigManager.from_environment(env_file=str(clean_env))

        assert config.get_fhir_config() == FhirConfig()
        assert config.get_sync_config() == SyncConfig()
        with pytest.raises(ValidationError):
            config.get_directory_config()

    def test_env_file_is_loaded(self, clean_env, monkeypatch):
        clean_env.write_text("DS_DIRECTORY_TOKEN=from-file\n", encoding="utf-8")

        config = ConfigManager.from_environment(env_file=str(clean_env))

        assert config.get_directory_config().token.get_secret_value() == "from-file"

    def test_environment_wins_over_env_file(self, clean_env, monkeypatch):
        clean_env.write_text("DS_DIRECTORY_TOKEN=from-file\n", encoding="utf-8")
        monkeypatch.setenv("DS_DIRECTORY_TOKEN", "from-environment")

        config = ConfigManager.from_environment(env_file=str(clean_env))

        assert config.get_directory_config().token.get_secret_value() == "from-environment"


class TestFromFile:
    """Test suite for ConfigManager.from_file."""

    def test_sections(self, tmp_path):
        config_file = tmp_path / "directory-sync.json"
        config_file.write_text(json.dumps({
            "fhir": {"base_url": "https://blaze.test/fhir", "timeout": 60},
            "directory": {"token": "abc"},
            "sync": {"min_donors": 0, "sync_attributes": True},
        }), encoding="utf-8")
        os.chmod(config_file, 0o600)

        config = ConfigManager.from_file(str(config_file))

        assert config.get_fhir_config().timeout == 60
        assert config.get_sync_config().min_donors == 0
        assert config.get_sync_config().sync_attributes is True
        assert config.get("sync.min_donors") == 0
        assert config.get("sync.unknown", "fallback") == "fallback"
        assert config.get("fhir.base_url.deeper", "fallback") == "fallback"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager.from_file(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        config_file = tmp_path / "broken.json"
        config_file.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))

    def test_top_level_must_be_an_object(self, tmp_path):
        config_file = tmp_path / "list.json"
        config_file.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))
