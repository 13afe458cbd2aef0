"""Process-memory credential store."""

from pathlib import Path
from typing import Any, Optional

from .base import Store
from .persistent import PersistentStore
from .secure import SecureStorage


class MemoryStore(Store):
    """Volatile store; nothing survives the process."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def has(self, key: str) -> bool:
        return self._data.get(key) is not None

    def clear(self) -> None:
        self._data = {}

    def get_all(self) -> dict[str, Any]:
        return {k: v for k, v in self._data.items() if v is not None}

    def to_persistent(
        self,
        name: str,
        encrypted: bool,
        data_dir: Optional[Path] = None,
        secure_storage: Optional[SecureStorage] = None,
        watch: bool = True,
    ) -> PersistentStore:
        """Copy every defined key into a new durable store.

        Values go through ``PersistentStore.set`` so the API key takes the
        encryption path.
        """
        store = PersistentStore(
            name,
            encrypted,
            data_dir=data_dir,
            secure_storage=secure_storage,
            watch=watch,
        )
        for key, value in self._data.items():
            if value is not None:
                store.set(key, value)
        return store
