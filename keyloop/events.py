"""Lifecycle notifications emitted by the auth service.

Listeners are called synchronously, in subscription order, on the thread
that emitted the event.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable

_log = logging.getLogger(__name__)

Listener = Callable[..., Any]


class AuthEvent(str, Enum):
    """Events collaborators can subscribe to."""

    READY = "ready"
    API_KEY = "api_key"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    CALLBACK_RECEIVED = "callback_received"


class EventBus:
    """Observer list per event."""

    def __init__(self):
        self._listeners: dict[AuthEvent, list[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, event: AuthEvent, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(AuthEvent(event), []).append(listener)

    def off(self, event: AuthEvent, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(AuthEvent(event), [])
            if listener in listeners:
                listeners.remove(listener)

    def once(self, event: AuthEvent, listener: Listener) -> None:
        """Subscribe for a single delivery."""

        def _wrapper(*args: Any) -> None:
            self.off(event, _wrapper)
            listener(*args)

        self.on(event, _wrapper)

    def listener_count(self, event: AuthEvent) -> int:
        with self._lock:
            return len(self._listeners.get(AuthEvent(event), []))

    def emit(self, event: AuthEvent, *args: Any) -> None:
        """Deliver to a snapshot of the current listeners.

        A failing listener is logged and does not stop delivery to the rest.
        """
        with self._lock:
            listeners = list(self._listeners.get(AuthEvent(event), []))

        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                _log.exception("Listener for %s failed", AuthEvent(event).value)
