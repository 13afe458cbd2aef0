"""Credential store contract shared by the volatile and durable backends."""

from abc import ABC, abstractmethod
from typing import Any, Optional

# Fields of the credential record.
API_KEY = "api_key"
TOKENS = "tokens"
USER = "user"
EXPIRES_AT = "expires_at"

CREDENTIAL_FIELDS = (API_KEY, TOKENS, USER, EXPIRES_AT)


class Store(ABC):
    """Key-value persistence for the credential record.

    A key whose value is ``None`` is treated as absent.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``. ``None`` removes the key."""
        pass

    @abstractmethod
    def has(self, key: str) -> bool:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def get_all(self) -> dict[str, Any]:
        """Snapshot of all defined keys."""
        pass
