"""Tests for the durable, encrypted-at-rest credential store."""

import json
import threading
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from keyloop.errors import StoreDeletionFailed
from keyloop.stores import (
    API_KEY,
    FernetSecureStorage,
    PersistentStore,
    UnavailableSecureStorage,
    store_path,
)


@pytest.fixture
def secure():
    return FernetSecureStorage(Fernet.generate_key())


def _store(tmp_path, secure, encrypted=True, name="auth-storage"):
    return PersistentStore(name, encrypted, data_dir=tmp_path, secure_storage=secure, watch=False)


def _raw(tmp_path, name="auth-storage"):
    return json.loads((tmp_path / f"{name}.json").read_text())


class TestContract:
    def test_round_trip(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set("tokens", {"access_token": "AT1"})
        store.set("expires_at", 123)
        assert store.get("tokens") == {"access_token": "AT1"}
        assert store.get("expires_at") == 123
        assert store.has("tokens") is True

    def test_none_removes_key(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set("user", {"sub": "u1"})
        store.set("user", None)
        assert store.has("user") is False
        assert "user" not in _raw(tmp_path)

    def test_clear(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set("user", {"sub": "u1"})
        store.set(API_KEY, "K1")
        store.clear()
        assert store.get_all() == {}
        assert store.has("user") is False
        assert store.has(API_KEY) is False

    def test_data_survives_reopen(self, tmp_path, secure):
        _store(tmp_path, secure).set("user", {"sub": "u1"})
        assert _store(tmp_path, secure).get("user") == {"sub": "u1"}

    def test_unreadable_file_starts_empty(self, tmp_path, secure):
        (tmp_path / "auth-storage.json").write_text("not json")
        assert _store(tmp_path, secure).get_all() == {}

    def test_exists(self, tmp_path, secure):
        assert PersistentStore.exists("auth-storage", tmp_path) is False
        _store(tmp_path, secure).set("a", 1)
        assert PersistentStore.exists("auth-storage", tmp_path) is True
        assert store_path("auth-storage", tmp_path) == tmp_path / "auth-storage.json"


class TestEncryption:
    def test_api_key_encrypted_on_disk(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set(API_KEY, "K1")

        raw = _raw(tmp_path)[API_KEY]
        assert raw != "K1"
        assert secure.decrypt(bytes.fromhex(raw)) == b"K1"
        assert store.get(API_KEY) == "K1"
        assert store.get_all()[API_KEY] == "K1"

    def test_other_fields_not_encrypted(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set("user", {"email": "a@x.com"})
        assert _raw(tmp_path)["user"] == {"email": "a@x.com"}

    def test_unencrypted_mode_stores_raw(self, tmp_path, secure):
        store = _store(tmp_path, secure, encrypted=False)
        store.set(API_KEY, "K1")
        assert _raw(tmp_path)[API_KEY] == "K1"
        assert store.get(API_KEY) == "K1"

    def test_unavailable_degrades_to_raw(self, tmp_path):
        store = _store(tmp_path, UnavailableSecureStorage())
        store.set(API_KEY, "K1")
        assert _raw(tmp_path)[API_KEY] == "K1"
        assert store.get(API_KEY) == "K1"

    def test_unavailable_at_read_returns_stored_value(self, tmp_path, secure):
        _store(tmp_path, secure).set(API_KEY, "K1")
        raw = _raw(tmp_path)[API_KEY]

        reopened = _store(tmp_path, UnavailableSecureStorage())
        assert reopened.get(API_KEY) == raw

    def test_legacy_plaintext_value_is_returned(self, tmp_path, secure):
        (tmp_path / "auth-storage.json").write_text(json.dumps({API_KEY: "plain-key"}))
        assert _store(tmp_path, secure).get(API_KEY) == "plain-key"


class TestDeleteStore:
    def test_removes_file(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set(API_KEY, "K1")
        store.delete_store()
        assert not store.path.exists()
        assert store.get_all() == {}

    def test_io_failure_is_raised(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set(API_KEY, "K1")
        with patch("pathlib.Path.unlink", side_effect=PermissionError("denied")):
            with pytest.raises(StoreDeletionFailed):
                store.delete_store()


class TestApiKeyNotifications:
    def test_set_notifies_with_decrypted_value(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        seen = []
        store.on_api_key_change(seen.append)

        store.set(API_KEY, "K1")
        store.set("user", {"sub": "u1"})
        store.set(API_KEY, "K2")

        assert seen == ["K1", "K2"]

    def test_off_stops_notifications(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        seen = []
        store.on_api_key_change(seen.append)
        store.off_api_key_change(seen.append)
        store.set(API_KEY, "K1")
        assert seen == []

    def test_reload_detects_external_change(self, tmp_path, secure):
        store = _store(tmp_path, secure)
        store.set(API_KEY, "K1")
        seen = []
        store.on_api_key_change(seen.append)

        _store(tmp_path, secure).set(API_KEY, "K2")
        store.reload()
        store.reload()

        assert seen == ["K2"]
        assert store.get(API_KEY) == "K2"

    def test_watcher_picks_up_external_write(self, tmp_path, secure):
        store = PersistentStore(
            "auth-storage", True, data_dir=tmp_path, secure_storage=secure, watch=True,
        )
        changed = threading.Event()
        seen = []

        def _listener(value):
            seen.append(value)
            changed.set()

        store.on_api_key_change(_listener)
        try:
            _store(tmp_path, secure).set(API_KEY, "K9")
            assert changed.wait(5)
            assert seen[-1] == "K9"
        finally:
            store.close()
        assert store.watching is False

    def test_delete_store_stops_watcher(self, tmp_path, secure):
        store = PersistentStore(
            "auth-storage", True, data_dir=tmp_path, secure_storage=secure, watch=True,
        )
        assert store.watching is True
        store.delete_store()
        assert store.watching is False
