"""Durable credential store: one JSON document per store name.

When ``encrypted`` is set, the API key is written as hex-encoded
ciphertext from the secure storage capability and decrypted on read.
Encryption is best effort. If the capability is unavailable, values are
stored and returned as-is with a warning instead of failing.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from cryptography.fernet import InvalidToken
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import EncryptionUnavailable, StoreDeletionFailed
from .base import API_KEY, Store
from .secure import KeyringSecureStorage, SecureStorage

_log = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path("~/.config/keyloop").expanduser()

ApiKeyListener = Callable[[str], Any]


def store_path(name: str, data_dir: Optional[Path] = None) -> Path:
    """Location of the document backing the store called ``name``."""
    return Path(data_dir or DEFAULT_DATA_DIR).expanduser() / f"{name}.json"


class _StoreFileHandler(FileSystemEventHandler):
    """Reloads the store when its document changes on disk."""

    def __init__(self, store: "PersistentStore"):
        self._store = store

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        target = str(self._store.path)
        paths = {os.fsdecode(event.src_path), os.fsdecode(getattr(event, "dest_path", "") or "")}
        if target in paths:
            self._store.reload()


class PersistentStore(Store):
    """Disk-resident store with optional API key encryption."""

    def __init__(
        self,
        name: str,
        encrypted: bool,
        data_dir: Optional[Path] = None,
        secure_storage: Optional[SecureStorage] = None,
        watch: bool = True,
    ):
        self.name = name
        self.encrypted = encrypted
        self._path = store_path(name, data_dir)
        self._secure = secure_storage or KeyringSecureStorage()
        self._lock = threading.RLock()
        self._listeners: list[ApiKeyListener] = []
        self._data = self._read()
        self._raw_api_key = self._data.get(API_KEY)
        self._observer: Optional[Observer] = None
        if watch:
            self._start_watcher()

    @classmethod
    def exists(cls, name: str, data_dir: Optional[Path] = None) -> bool:
        """True when a document for ``name`` is on disk. Contents are not read."""
        return store_path(name, data_dir).is_file()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def watching(self) -> bool:
        return self._observer is not None

    # --- Store contract ---

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get(key)
        if key == API_KEY:
            return self._decrypt(value)
        return value

    def set(self, key: str, value: Any) -> None:
        if key == API_KEY:
            value = self._encrypt(value)

        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            self._write()
            changed = self._track_raw_api_key()

        if changed is not None:
            self._notify(changed)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._data.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._data = {}
            self._raw_api_key = None
            self._write()

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            snapshot = {k: v for k, v in self._data.items() if v is not None}
        if API_KEY in snapshot:
            snapshot[API_KEY] = self._decrypt(snapshot[API_KEY])
        return snapshot

    # --- Lifecycle ---

    def delete_store(self) -> None:
        """Clear the store, stop watching, and remove the backing file.

        Raises:
            StoreDeletionFailed: If the document could not be cleared or removed.
        """
        try:
            self.clear()
            self.close()
            if self._path.exists():
                self._path.unlink()
                _log.info("Deleted credential store at %s", self._path)
        except OSError as exc:
            _log.error("Failed to delete credential store %s: %s", self._path, exc)
            raise StoreDeletionFailed(f"Could not delete {self._path}: {exc}") from exc

    def close(self) -> None:
        """Stop the file watcher. The document stays on disk."""
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def reload(self) -> None:
        """Re-read the document and notify if the raw API key changed."""
        with self._lock:
            self._data = self._read()
            changed = self._track_raw_api_key()
        if changed is not None:
            self._notify(changed)

    # --- API key change notifications ---

    def on_api_key_change(self, listener: ApiKeyListener) -> None:
        """Call ``listener`` with the decrypted key whenever it changes."""
        with self._lock:
            self._listeners.append(listener)

    def off_api_key_change(self, listener: ApiKeyListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _track_raw_api_key(self) -> Optional[str]:
        """Update the last-seen raw key; return the new raw value if it changed."""
        new_raw = self._data.get(API_KEY)
        old_raw, self._raw_api_key = self._raw_api_key, new_raw
        if new_raw != old_raw and isinstance(new_raw, str) and new_raw:
            return new_raw
        return None

    def _notify(self, raw_value: str) -> None:
        decrypted = self._decrypt(raw_value)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(decrypted)
            except Exception:
                _log.exception("API key listener failed")

    # --- Internals ---

    def _start_watcher(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_StoreFileHandler(self), str(self._path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def _read(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            _log.warning("Ignoring unreadable credential store %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f".{self._path.name}.tmp")
        tmp.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, self._path)

    def _encrypt(self, value: Any) -> Any:
        if not self.encrypted or not isinstance(value, str):
            return value
        if not self._secure.is_available():
            _log.warning("Encryption not available, storing API key unencrypted")
            return value
        try:
            return self._secure.encrypt(value.encode("utf-8")).hex()
        except EncryptionUnavailable as exc:
            _log.warning("Encryption failed, storing API key unencrypted: %s", exc)
            return value

    def _decrypt(self, value: Any) -> Any:
        if not self.encrypted or not isinstance(value, str):
            return value
        if not self._secure.is_available():
            _log.warning("Decryption not available, returning stored API key as-is")
            return value
        try:
            return self._secure.decrypt(bytes.fromhex(value)).decode("utf-8")
        except (ValueError, InvalidToken, EncryptionUnavailable):
            _log.warning("Could not decrypt API key, assuming it was stored unencrypted")
            return value
