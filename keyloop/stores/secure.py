"""Secure storage capability used by the durable store.

The durable store only needs ``encrypt``/``decrypt`` on bytes plus an
availability check. The default implementation encrypts with Fernet and
keeps the Fernet key in the OS keychain, so the on-disk document is
useless without the user's login keychain.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import keyring
from cryptography.fernet import Fernet
from keyring.backends import fail
from keyring.errors import KeyringError

from ..errors import EncryptionUnavailable

_log = logging.getLogger(__name__)

KEYRING_SERVICE = "keyloop"
KEYRING_USERNAME = "credential-store-key"


class SecureStorage(ABC):
    """Opaque encrypt/decrypt service."""

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def encrypt(self, data: bytes) -> bytes:
        """Encrypt ``data``. Raises EncryptionUnavailable when unavailable."""
        pass

    @abstractmethod
    def decrypt(self, data: bytes) -> bytes:
        """Decrypt ``data``. Raises EncryptionUnavailable when unavailable."""
        pass


class UnavailableSecureStorage(SecureStorage):
    """For platforms or configurations without a keychain."""

    def is_available(self) -> bool:
        return False

    def encrypt(self, data: bytes) -> bytes:
        raise EncryptionUnavailable("Secure storage is not available")

    def decrypt(self, data: bytes) -> bytes:
        raise EncryptionUnavailable("Secure storage is not available")


class FernetSecureStorage(SecureStorage):
    """Fernet encryption with a key supplied by the caller."""

    def __init__(self, key: Optional[bytes] = None):
        self._cipher: Optional[Fernet] = Fernet(key) if key else None

    def _get_cipher(self) -> Fernet:
        if self._cipher is None:
            raise EncryptionUnavailable("No encryption key configured")
        return self._cipher

    def is_available(self) -> bool:
        return self._cipher is not None

    def encrypt(self, data: bytes) -> bytes:
        return self._get_cipher().encrypt(data)

    def decrypt(self, data: bytes) -> bytes:
        # InvalidToken propagates; the store treats it as an unencrypted value.
        return self._get_cipher().decrypt(data)


class KeyringSecureStorage(FernetSecureStorage):
    """Fernet key held in the OS keychain via ``keyring``.

    The key is created on first use. Touching the keychain may prompt the
    user (macOS), so nothing is read until encryption is actually needed.
    """

    def __init__(
        self,
        service: str = KEYRING_SERVICE,
        username: str = KEYRING_USERNAME,
    ):
        super().__init__()
        self.service = service
        self.username = username
        self._available: Optional[bool] = None
        self._lock = threading.Lock()

    def _load_key(self) -> Optional[bytes]:
        try:
            key = keyring.get_password(self.service, self.username)
            if not key:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(self.service, self.username, key)
                _log.info("Created credential store key in %s", type(keyring.get_keyring()).__name__)
            return key.encode("ascii")
        except KeyringError as exc:
            _log.warning("Keychain access failed: %s", exc)
            return None

    def is_available(self) -> bool:
        with self._lock:
            if self._available is None:
                if isinstance(keyring.get_keyring(), fail.Keyring):
                    _log.warning("No usable keyring backend, secure storage disabled")
                    self._available = False
                else:
                    key = self._load_key()
                    if key is not None:
                        self._cipher = Fernet(key)
                    self._available = key is not None
            return self._available

    def _get_cipher(self) -> Fernet:
        if not self.is_available():
            raise EncryptionUnavailable("Keychain is not available")
        return super()._get_cipher()
