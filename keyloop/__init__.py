"""keyloop - loopback OAuth login with pluggable credential storage."""

__version__ = "0.1.0"

from .config import AuthSettings, ConfigManager, StorageSettings
from .events import AuthEvent
from .service import AuthService, Credentials, LoadResult, RefreshResult
from .stores import MemoryStore, PersistentStore
from .tokens import TokenService

__all__ = [
    "AuthEvent",
    "AuthService",
    "AuthSettings",
    "ConfigManager",
    "Credentials",
    "LoadResult",
    "MemoryStore",
    "PersistentStore",
    "RefreshResult",
    "StorageSettings",
    "TokenService",
]
