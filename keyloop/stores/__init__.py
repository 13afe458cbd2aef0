"""Credential stores: volatile, durable, and the secure storage they use."""

from .base import API_KEY, CREDENTIAL_FIELDS, EXPIRES_AT, TOKENS, USER, Store
from .memory import MemoryStore
from .persistent import DEFAULT_DATA_DIR, PersistentStore, store_path
from .secure import (
    FernetSecureStorage,
    KeyringSecureStorage,
    SecureStorage,
    UnavailableSecureStorage,
)

__all__ = [
    "API_KEY",
    "CREDENTIAL_FIELDS",
    "DEFAULT_DATA_DIR",
    "EXPIRES_AT",
    "FernetSecureStorage",
    "KeyringSecureStorage",
    "MemoryStore",
    "PersistentStore",
    "SecureStorage",
    "Store",
    "TOKENS",
    "USER",
    "UnavailableSecureStorage",
    "store_path",
]
