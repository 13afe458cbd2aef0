"""Tests for configuration system."""

import os
import tempfile
from pathlib import Path

from keyloop.config import AuthSettings, ConfigManager, StorageSettings


def test_config_creation():
    """Test config file creation."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "config.yaml"
        manager = ConfigManager(str(config_path))

        assert config_path.exists()
        assert "auth" in manager.data
        assert "storage" in manager.data


def test_default_auth_settings(monkeypatch):
    """Test auth settings built from the default config."""
    monkeypatch.delenv("KEYLOOP_CLIENT_ID", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = ConfigManager(str(Path(tmpdir) / "config.yaml"))

        settings = manager.get_auth_settings()
        assert settings.client_id == ""
        assert settings.port == 5172
        assert settings.redirect_uri == "http://localhost:5172/"
        assert settings.scopes == ("openid", "profile", "email", "offline_access")


def test_client_id_from_environment(monkeypatch):
    """Test that the default client_id reference resolves from the environment."""
    monkeypatch.setenv("KEYLOOP_CLIENT_ID", "client-from-env")
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = ConfigManager(str(Path(tmpdir) / "config.yaml"))
        assert manager.get_auth_settings().client_id == "client-from-env"


def test_env_var_resolution():
    """Test environment variable resolution."""
    os.environ["TEST_KEY"] = "test_value"

    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "config.yaml"
        manager = ConfigManager(str(config_path))

        resolved = manager._resolve_env_var("${TEST_KEY}")
        assert resolved == "test_value"


def test_non_env_var_passthrough():
    """Test that non-env-var values pass through."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "config.yaml"
        manager = ConfigManager(str(config_path))

        assert manager._resolve_env_var("plain_value") == "plain_value"
        assert manager._resolve_env_var(5172) == 5172


def test_auth_base_trailing_slash_stripped():
    """Test that base URLs are normalised."""
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = ConfigManager(str(Path(tmpdir) / "config.yaml"))
        manager.data["auth"]["auth_base"] = "https://auth.example.com/"
        manager.data["auth"]["port"] = "6001"

        settings = manager.get_auth_settings()
        assert settings.auth_base == "https://auth.example.com"
        assert settings.port == 6001
        assert settings.redirect_uri == "http://localhost:6001/"


def test_storage_settings_default_to_config_dir():
    """Test that the store lives next to the config file by default."""
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = ConfigManager(str(Path(tmpdir) / "config.yaml"))

        storage = manager.get_storage_settings()
        assert storage.store_name == "auth-storage"
        assert storage.data_dir == Path(tmpdir)
        assert storage.encrypted is True
        assert storage.credential_storage_enabled is False


def test_missing_sections_fall_back_to_defaults():
    """Test an empty config file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "config.yaml"
        config_path.write_text("")
        manager = ConfigManager(str(config_path))

        assert manager.data == {}
        assert manager.get_auth_settings() == AuthSettings(client_id="")
        assert manager.get_storage_settings() == StorageSettings()


def test_invalid_yaml_reads_as_empty():
    """Test that a broken config file does not crash loading."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "config.yaml"
        config_path.write_text("auth: [unclosed")
        manager = ConfigManager(str(config_path))
        assert manager.data == {}


def test_credential_storage_consent_persists():
    """Test that consent is saved and survives a reload."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "config.yaml"
        manager = ConfigManager(str(config_path))
        assert manager.is_credential_storage_enabled() is False

        manager.set_credential_storage_enabled(True)
        assert ConfigManager(str(config_path)).is_credential_storage_enabled() is True

        manager.set_credential_storage_enabled(False)
        assert ConfigManager(str(config_path)).is_credential_storage_enabled() is False
