"""Auth service: owns the credential store, the callback listener and the
token service, and drives the login state machine.

States: unauthenticated -> login pending -> authenticated. A pending login
ends exactly once, in success, failure, timeout or cancellation. Whichever
outcome settles it first wins and later attempts are no-ops.

One instance is built at process start and handed to whatever needs it.
"""

import logging
import secrets
import threading
import time
import webbrowser
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from .config import AuthSettings, ConfigManager, StorageSettings
from .errors import AuthError, CallbackError, LoginCancelled, LoginTimeout, StoreDeletionFailed
from .events import AuthEvent, EventBus, Listener
from .stores import API_KEY, EXPIRES_AT, TOKENS, USER, MemoryStore, PersistentStore, Store
from .stores.secure import SecureStorage
from .tokens import TokenService, compute_expires_at
from .web.server import CallbackServer

_log = logging.getLogger(__name__)

# Tokens this close to expiry are refreshed before use.
EXPIRY_BUFFER_SECONDS = 300


@dataclass(frozen=True)
class Credentials:
    """A complete credential record."""
    api_key: str
    tokens: dict[str, Any]
    user: dict[str, Any]
    expires_at: Optional[int] = None

    def is_expired(self, buffer_seconds: int = 0, now: Optional[float] = None) -> bool:
        """True if expired, expiring within ``buffer_seconds``, or of unknown expiry."""
        if self.expires_at is None:
            return True
        if now is None:
            now = time.time()
        return int(now) >= self.expires_at - buffer_seconds

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class LoadResult:
    success: bool
    error: Optional[str] = None


@dataclass
class PendingLogin:
    """The single in-flight login attempt."""
    state: str
    deadline: float
    result: Optional[Credentials] = None
    error: Optional[BaseException] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def settled(self) -> bool:
        return self._done.is_set()

    def settle(
        self,
        result: Optional[Credentials] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        """Record the outcome. Returns False if an outcome was already recorded."""
        with self._lock:
            if self._done.is_set():
                return False
            self.result = result
            self.error = error
            self._done.set()
            return True

    def wait(self) -> bool:
        """Block until settled or the deadline passes."""
        return self._done.wait(max(0.0, self.deadline - time.monotonic()))


class AuthService:
    """Login, logout, refresh and credential storage for one account."""

    def __init__(
        self,
        auth_settings: AuthSettings,
        storage_settings: Optional[StorageSettings] = None,
        config: Optional[ConfigManager] = None,
        token_service: Optional[TokenService] = None,
        secure_storage: Optional[SecureStorage] = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
        watch_store: bool = True,
    ):
        self.auth_settings = auth_settings
        self.storage_settings = storage_settings or StorageSettings()
        self.config = config
        self.tokens = token_service or TokenService(auth_settings)
        self._secure_storage = secure_storage
        self._open_browser = open_browser
        self._watch_store = watch_store

        self._store: Store = MemoryStore()
        self._pending: Optional[PendingLogin] = None
        self._lock = threading.RLock()
        self._refresh_lock = threading.Lock()
        self._events = EventBus()

        self.callback_server = CallbackServer(
            on_code=self._on_callback_code,
            on_error=self._on_callback_error,
            on_received=lambda: self._events.emit(AuthEvent.CALLBACK_RECEIVED),
            host=auth_settings.host,
            port=auth_settings.port,
        )

    @classmethod
    def from_config(cls, config: ConfigManager, **kwargs: Any) -> "AuthService":
        return cls(
            config.get_auth_settings(),
            config.get_storage_settings(),
            config=config,
            **kwargs,
        )

    # --- Events ---

    def on(self, event: AuthEvent, listener: Listener) -> None:
        self._events.on(event, listener)

    def off(self, event: AuthEvent, listener: Listener) -> None:
        self._events.off(event, listener)

    def once(self, event: AuthEvent, listener: Listener) -> None:
        self._events.once(event, listener)

    # --- Lifecycle ---

    def start(self) -> None:
        """Load consented durable storage, start the listener, announce readiness."""
        if self.config is not None and self.config.is_credential_storage_enabled():
            result = self.load_from_persistent_store()
            if not result.success:
                _log.info("Credential storage enabled but not loaded: %s", result.error)

        self.callback_server.start()

        api_key = self.get_api_key()
        if api_key:
            self._events.emit(AuthEvent.API_KEY, api_key)
        self._events.emit(AuthEvent.READY)

    def stop(self) -> None:
        """Stop the listener, cancel any pending login, release the store watcher."""
        self.callback_server.stop()
        self.cancel_login("Auth service stopped")
        with self._lock:
            store = self._store
        if isinstance(store, PersistentStore):
            store.close()

    # --- Store access ---

    @property
    def store(self) -> Store:
        with self._lock:
            return self._store

    @property
    def is_persistent(self) -> bool:
        return isinstance(self.store, PersistentStore)

    @property
    def login_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def get_api_key(self) -> Optional[str]:
        with self._lock:
            return self._store.get(API_KEY)

    def has_stored_credentials(self) -> bool:
        return self.get_stored_credentials() is not None

    def get_stored_credentials(self) -> Optional[Credentials]:
        """The full record, or None unless api_key, tokens and user are all present."""
        with self._lock:
            data = self._store.get_all()

        if not (data.get(API_KEY) and data.get(TOKENS) and data.get(USER)):
            return None
        return Credentials(
            api_key=data[API_KEY],
            tokens=data[TOKENS],
            user=data[USER],
            expires_at=data.get(EXPIRES_AT),
        )

    def clear_credentials(self) -> None:
        """Drop tokens and profile but keep the API key.

        A durable store is deleted from disk and replaced by a fresh
        in-memory store.

        Raises:
            StoreDeletionFailed: If the durable store file could not be removed.
                The API key is kept in that case.
        """
        with self._lock:
            store = self._store
            api_key = store.get(API_KEY)

            if isinstance(store, PersistentStore):
                store.off_api_key_change(self._on_store_api_key)
                try:
                    store.delete_store()
                except StoreDeletionFailed:
                    self._restore_after_failed_delete(store, api_key)
                    raise
                self._store = MemoryStore()
            else:
                store.clear()

            if api_key:
                self._store.set(API_KEY, api_key)
        _log.info("Cleared stored credentials")

    def _restore_after_failed_delete(self, store: PersistentStore, api_key: Optional[str]) -> None:
        """Keep the API key after a durable store could not be removed.

        The store stays active when the key can be written back to it;
        otherwise the key moves to a fresh in-memory store.
        """
        store.on_api_key_change(self._on_store_api_key)
        if not api_key:
            return
        try:
            store.set(API_KEY, api_key)
        except OSError as exc:
            _log.error("Could not restore API key to %s: %s", store.path, exc)
            store.off_api_key_change(self._on_store_api_key)
            self._store = MemoryStore({API_KEY: api_key})

    def logout(self) -> None:
        """Clear credentials and withdraw the consent to keep them on disk."""
        self.clear_credentials()
        if self.config is not None:
            self.config.set_credential_storage_enabled(False)

    # --- Persistence ---

    def has_existing_encrypted_store(self) -> bool:
        """Whether this device ever enabled persistence. Reads nothing from the file."""
        return PersistentStore.exists(
            self.storage_settings.store_name, self.storage_settings.data_dir,
        )

    def enable_persistence(self) -> None:
        """Move the in-memory credentials to the durable store.

        Calling this when already persistent does nothing.
        """
        with self._lock:
            if isinstance(self._store, PersistentStore):
                _log.info("Credential persistence already enabled")
                return

            memory = self._store
            if not isinstance(memory, MemoryStore):
                raise TypeError(f"Cannot migrate a {type(memory).__name__}")
            durable = memory.to_persistent(
                self.storage_settings.store_name,
                self.storage_settings.encrypted,
                data_dir=self.storage_settings.data_dir,
                secure_storage=self._secure_storage,
                watch=self._watch_store,
            )
            durable.on_api_key_change(self._on_store_api_key)
            self._store = durable
        _log.info("Credential persistence enabled at %s", durable.path)

        if self.config is not None:
            self.config.set_credential_storage_enabled(True)

    def load_from_persistent_store(self) -> LoadResult:
        """Switch to an existing durable store left by an earlier session.

        Values only present in memory are carried over. Returns a result
        instead of raising.
        """
        if not self.has_existing_encrypted_store():
            return LoadResult(False, "No encrypted store found")

        with self._lock:
            if isinstance(self._store, PersistentStore):
                _log.info("Persistent store already loaded")
                return LoadResult(True)

            try:
                durable = self._open_persistent_store()
                for key, value in self._store.get_all().items():
                    if not durable.has(key):
                        durable.set(key, value)
            except OSError as exc:
                _log.error("Failed to load persistent store: %s", exc)
                return LoadResult(False, str(exc))

            durable.on_api_key_change(self._on_store_api_key)
            self._store = durable
            api_key = durable.get(API_KEY)

        _log.info("Loaded credentials from %s", durable.path)
        if api_key:
            self._events.emit(AuthEvent.API_KEY, api_key)
        return LoadResult(True)

    def _open_persistent_store(self) -> PersistentStore:
        return PersistentStore(
            self.storage_settings.store_name,
            self.storage_settings.encrypted,
            data_dir=self.storage_settings.data_dir,
            secure_storage=self._secure_storage,
            watch=self._watch_store,
        )

    def _on_store_api_key(self, api_key: str) -> None:
        self._events.emit(AuthEvent.API_KEY, api_key)

    def _set_api_key(self, api_key: str) -> None:
        with self._lock:
            store = self._store
            store.set(API_KEY, api_key)
        # The durable store reports its own changes through _on_store_api_key.
        if not isinstance(store, PersistentStore):
            self._events.emit(AuthEvent.API_KEY, api_key)

    def wait_for_api_key(self, timeout: Optional[float] = None) -> str:
        """Return the stored API key, or block until one arrives.

        Raises:
            TimeoutError: If no key arrives within ``timeout`` seconds.
        """
        arrived = threading.Event()
        received: list[str] = []

        def _listener(value: str) -> None:
            received.append(value)
            arrived.set()

        self._events.on(AuthEvent.API_KEY, _listener)
        try:
            api_key = self.get_api_key()
            if api_key:
                return api_key
            if not arrived.wait(timeout):
                raise TimeoutError("Timed out waiting for an API key")
            return received[0]
        finally:
            self._events.off(AuthEvent.API_KEY, _listener)

    # --- Login ---

    def login(self, timeout: Optional[float] = None) -> Credentials:
        """Return credentials, running the browser flow if none are stored.

        A call made while a login is already pending waits on that login
        instead of opening a second browser tab.

        Raises:
            LoginTimeout: No callback arrived in time.
            CallbackError: The provider redirected back with an error.
            LoginCancelled: cancel_login() was called.
            TokenServiceError: A step of the exchange pipeline failed.
        """
        stored = self.get_stored_credentials()
        if stored is not None:
            _log.info("Using stored credentials")
            return stored

        window = self.auth_settings.login_timeout if timeout is None else timeout
        with self._lock:
            pending = self._pending
            is_new = pending is None
            if pending is None:
                pending = PendingLogin(
                    state=secrets.token_urlsafe(16),
                    deadline=time.monotonic() + window,
                )
                self._pending = pending

        if is_new:
            _log.info("Opening browser for login")
            try:
                self._open_browser(self.tokens.authorize_url(pending.state))
            except webbrowser.Error as exc:
                self._settle(pending, error=CallbackError(f"Could not open browser: {exc}"))
        else:
            _log.info("Login already in progress, waiting for it")

        if not pending.wait():
            self._settle(pending, error=LoginTimeout("Authentication timeout"))

        if pending.error is not None:
            raise pending.error
        return pending.result

    def cancel_login(self, reason: str = "Login cancelled") -> bool:
        """Fail the pending login, if any. Returns True if one was cancelled."""
        with self._lock:
            pending = self._pending
        if pending is None:
            return False
        return self._settle(pending, error=LoginCancelled(reason))

    def attempt_silent_login(self) -> bool:
        """True if usable credentials exist, refreshing them if they are about to expire."""
        credentials = self.get_stored_credentials()
        if credentials is None:
            return False
        if not credentials.is_expired(EXPIRY_BUFFER_SECONDS):
            return True

        _log.info("Stored token expired or expiring soon, refreshing")
        return self.refresh_tokens().success

    def handle_auth_code(self, code: str, state: Optional[str] = None) -> Credentials:
        """Run exchange -> expiry -> userinfo -> API key -> store write.

        The API key is only minted when none is stored. The pending login,
        if any, is settled with the outcome and the pending slot is always
        cleared. Errors are re-raised after settling.
        """
        with self._lock:
            pending = self._pending

        _log.info("Handling authorization code")
        try:
            tokens = self.tokens.exchange_code(code)
            expires_at = compute_expires_at(tokens)
            access_token = tokens["access_token"]

            user = self.tokens.fetch_user_info(access_token)

            api_key = self.get_api_key()
            if not api_key:
                api_key = self.tokens.mint_api_key(access_token)
                self._set_api_key(api_key)

            with self._lock:
                self._store.set(TOKENS, tokens)
                self._store.set(USER, user)
                self._store.set(EXPIRES_AT, expires_at)

            credentials = Credentials(
                api_key=api_key, tokens=tokens, user=user, expires_at=expires_at,
            )
        except Exception as exc:
            _log.error("Login pipeline failed: %s", exc)
            if pending is not None:
                self._settle(pending, error=exc)
            raise
        finally:
            with self._lock:
                if self._pending is pending:
                    self._pending = None

        _log.info("Login completed for %s", user.get("email") or user.get("sub"))
        if pending is not None:
            self._settle(pending, result=credentials)
        else:
            self._events.emit(AuthEvent.LOGIN_SUCCEEDED, credentials)
        return credentials

    def _settle(
        self,
        pending: PendingLogin,
        result: Optional[Credentials] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        if not pending.settle(result, error):
            return False

        with self._lock:
            if self._pending is pending:
                self._pending = None

        if error is not None:
            self._events.emit(AuthEvent.LOGIN_FAILED, str(error))
        else:
            self._events.emit(AuthEvent.LOGIN_SUCCEEDED, result)
        return True

    def _on_callback_code(self, code: str, state: Optional[str]) -> None:
        with self._lock:
            pending = self._pending

        if pending is None:
            _log.warning("Ignoring authorization callback: no login in progress")
            return
        if state != pending.state:
            _log.warning("Rejecting authorization callback with mismatched state")
            self._settle(pending, error=CallbackError("State mismatch"))
            return

        try:
            self.handle_auth_code(code, state)
        except Exception:
            # Already delivered to the waiting login() caller.
            pass

    def _on_callback_error(self, message: str) -> None:
        with self._lock:
            pending = self._pending
        if pending is None:
            _log.warning("Authorization error with no login in progress: %s", message)
            return
        self._settle(pending, error=CallbackError(message))

    # --- Refresh ---

    def refresh_tokens(self, refresh_token: Optional[str] = None) -> RefreshResult:
        """Refresh the token set; never raises for protocol failures.

        Only ``tokens`` and ``expires_at`` are written. On failure the store
        is left untouched so the caller can fall back to an interactive login.
        """
        with self._refresh_lock:
            if refresh_token is None:
                with self._lock:
                    stored_tokens = self._store.get(TOKENS) or {}
                refresh_token = stored_tokens.get("refresh_token")
            if not refresh_token:
                return RefreshResult(False, "No refresh token available")

            try:
                tokens = self.tokens.refresh(refresh_token)
            except AuthError as exc:
                _log.warning("Token refresh failed: %s", exc)
                return RefreshResult(False, str(exc))

            # Servers without rotation omit refresh_token; keep the one we used.
            if not tokens.get("refresh_token"):
                tokens = {**tokens, "refresh_token": refresh_token}

            expires_at = compute_expires_at(tokens)
            with self._lock:
                self._store.set(TOKENS, tokens)
                self._store.set(EXPIRES_AT, expires_at)

        _log.info("Tokens refreshed")
        return RefreshResult(True)
