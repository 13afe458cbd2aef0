"""Loopback HTTP listener that receives the OAuth redirect.

Runs uvicorn in a daemon thread. The browser gets its page before the
code is handed on: the handoff is attached to the response as a Starlette
background task, which only runs once the response has been sent.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from .templates import SUCCESS_HTML, error_html

_log = logging.getLogger(__name__)

CodeHandler = Callable[[str, Optional[str]], Any]
ErrorHandler = Callable[[str], Any]


class CallbackServer:
    """Single-route OAuth callback listener bound to loopback."""

    def __init__(
        self,
        on_code: CodeHandler,
        on_error: ErrorHandler,
        on_received: Optional[Callable[[], Any]] = None,
        host: str = "127.0.0.1",
        port: int = 5172,
        startup_timeout: float = 5.0,
    ):
        self.on_code = on_code
        self.on_error = on_error
        self.on_received = on_received
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[uvicorn.Server] = None
        self._lock = threading.Lock()

        routes = [
            Route("/", self._callback, methods=["GET"]),
            Route("/health", self._health, methods=["GET"]),
        ]
        self.app = Starlette(routes=routes)

    async def _callback(self, request: Request) -> HTMLResponse:
        params = request.query_params
        code = params.get("code")
        state = params.get("state")
        error = params.get("error")
        error_description = params.get("error_description")

        _log.info("OAuth callback received (code present: %s)", bool(code))

        if self.on_received is not None:
            self.on_received()

        if code:
            return HTMLResponse(
                SUCCESS_HTML,
                background=BackgroundTask(self.on_code, code, state),
            )

        if error:
            message = error_description or error
            _log.warning("OAuth provider returned an error: %s", message)
            return HTMLResponse(
                error_html(message),
                background=BackgroundTask(self.on_error, message),
            )

        message = "No authorization code received"
        return HTMLResponse(
            error_html(message),
            status_code=400,
            background=BackgroundTask(self.on_error, message),
        )

    async def _health(self, request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> str:
        """Start listening in a daemon thread. Returns the URL.

        Calling start() while already listening does nothing.

        Raises:
            OSError: If the listener did not come up (e.g. the port is taken).
        """
        with self._lock:
            if self.running:
                _log.info("Callback server already running on %s", self.url)
                return self.url

            config = uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_level="warning",
            )
            server = uvicorn.Server(config)
            thread = threading.Thread(target=server.run, name="keyloop-callback", daemon=True)
            thread.start()

            deadline = time.monotonic() + self.startup_timeout
            while not server.started and thread.is_alive() and time.monotonic() < deadline:
                time.sleep(0.05)

            if not server.started:
                server.should_exit = True
                thread.join(timeout=1)
                raise OSError(f"Callback server could not listen on {self.host}:{self.port}")

            self._server = server
            self._thread = thread
            _log.info("Callback server listening on %s", self.url)
            return self.url

    def stop(self) -> None:
        """Shut down and release the socket. Safe when not running."""
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None

        if server is None:
            return
        server.should_exit = True
        if thread is not None:
            thread.join(timeout=5)
        _log.info("Callback server stopped")
