"""Configuration management for keyloop."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any
import yaml

_log = logging.getLogger(__name__)

DEFAULT_SCOPES = ("openid", "profile", "email", "offline_access")


@dataclass(frozen=True)
class AuthSettings:
    """Authorization server and loopback listener settings."""
    client_id: str
    auth_base: str = "https://auth.cloud.griptape.ai"
    api_base: str = "https://api.nodes.griptape.ai"
    audience: str = "https://cloud.griptape.ai/api"
    host: str = "127.0.0.1"
    port: int = 5172
    login_timeout: float = 300.0
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    http_timeout: float = 30.0

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}/"


@dataclass(frozen=True)
class StorageSettings:
    """Credential store settings."""
    store_name: str = "auth-storage"
    data_dir: Path = field(default_factory=lambda: Path("~/.config/keyloop").expanduser())
    encrypted: bool = True
    credential_storage_enabled: bool = False


class ConfigManager:
    """Manage keyloop configuration from YAML."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or "~/.config/keyloop/config.yaml").expanduser()
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            self._create_default_config()

        return self._read_yaml()

    def _read_yaml(self) -> Dict[str, Any]:
        """Read and parse YAML file."""
        try:
            with open(self.config_path, "r") as f:
                content = yaml.safe_load(f)
                return content or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Error reading config %s: %s", self.config_path, e)
            return {}

    def _create_default_config(self) -> None:
        """Create default configuration file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        default_config = {
            "auth": {
                "client_id": "${KEYLOOP_CLIENT_ID}",
                "auth_base": "https://auth.cloud.griptape.ai",
                "api_base": "https://api.nodes.griptape.ai",
                "audience": "https://cloud.griptape.ai/api",
                "host": "127.0.0.1",
                "port": 5172,
                "login_timeout": 300,
                "scopes": list(DEFAULT_SCOPES),
            },
            "storage": {
                "store_name": "auth-storage",
                "data_dir": str(self.config_path.parent),
                "encrypted": True,
                "credential_storage_enabled": False,
            },
        }

        with open(self.config_path, "w") as f:
            yaml.dump(default_config, f, default_flow_style=False)

    def _resolve_env_var(self, value: Any) -> Any:
        """Resolve environment variable references like ${VAR_NAME}."""
        if not isinstance(value, str) or not value.startswith("${") or not value.endswith("}"):
            return value

        var_name = value[2:-1]
        return os.getenv(var_name, "")

    def get_auth_settings(self) -> AuthSettings:
        """Build AuthSettings from the ``auth`` section."""
        section = {
            key: self._resolve_env_var(value)
            for key, value in self.data.get("auth", {}).items()
        }
        defaults = AuthSettings(client_id="")

        return AuthSettings(
            client_id=section.get("client_id") or "",
            auth_base=str(section.get("auth_base") or defaults.auth_base).rstrip("/"),
            api_base=str(section.get("api_base") or defaults.api_base).rstrip("/"),
            audience=section.get("audience") or defaults.audience,
            host=section.get("host") or defaults.host,
            port=int(section.get("port") or defaults.port),
            login_timeout=float(section.get("login_timeout") or defaults.login_timeout),
            scopes=tuple(section.get("scopes") or defaults.scopes),
            http_timeout=float(section.get("http_timeout") or defaults.http_timeout),
        )

    def get_storage_settings(self) -> StorageSettings:
        """Build StorageSettings from the ``storage`` section."""
        section = self.data.get("storage", {})
        defaults = StorageSettings()
        data_dir = self._resolve_env_var(section.get("data_dir", ""))

        return StorageSettings(
            store_name=section.get("store_name") or defaults.store_name,
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
            encrypted=bool(section.get("encrypted", defaults.encrypted)),
            credential_storage_enabled=bool(section.get("credential_storage_enabled", False)),
        )

    def is_credential_storage_enabled(self) -> bool:
        return self.get_storage_settings().credential_storage_enabled

    def set_credential_storage_enabled(self, enabled: bool) -> None:
        """Record (or withdraw) the user's consent to keep credentials on disk."""
        self.data.setdefault("storage", {})["credential_storage_enabled"] = enabled
        self.save()

    def save(self) -> None:
        """Save configuration to file."""
        with open(self.config_path, "w") as f:
            yaml.dump(self.data, f, default_flow_style=False)
