"""Token service: stateless calls against the authorization server.

Each call is one step of the login sequence (code -> tokens -> profile ->
API key) and raises its own error type so callers can react differently
to, for example, a rejected refresh token versus a failed exchange.
"""

import logging
import time
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from .config import AuthSettings
from .errors import (
    ApiKeyMintFailed,
    ExchangeFailed,
    RefreshFailed,
    TokenServiceError,
    UserInfoFailed,
)

_log = logging.getLogger(__name__)

# Assumed token lifetime when the server omits expires_in.
DEFAULT_EXPIRES_IN = 86400


def compute_expires_at(tokens: dict[str, Any], now: Optional[float] = None) -> int:
    """Absolute expiry in Unix seconds for a token response.

    A missing or non-numeric ``expires_in`` counts as the default lifetime.
    """
    if now is None:
        now = time.time()
    try:
        expires_in = int(float(tokens.get("expires_in")))
    except (TypeError, ValueError, OverflowError):
        if tokens.get("expires_in") is not None:
            _log.warning("Ignoring unusable expires_in %r", tokens.get("expires_in"))
        expires_in = DEFAULT_EXPIRES_IN
    return int(now) + expires_in


def _describe_error(response: httpx.Response) -> str:
    """Best human-readable reason from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("error_description") or body.get("error") or body.get("message")
        if detail:
            return f"{response.reason_phrase} - {detail}"
    return response.reason_phrase or f"HTTP {response.status_code}"


class TokenService:
    """Exchange, refresh, userinfo and API key calls for one client."""

    def __init__(self, settings: AuthSettings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.http_timeout)

    def close(self) -> None:
        self.client.close()

    def authorize_url(self, state: str) -> str:
        """URL that starts the authorization-code flow in the browser."""
        params = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "audience": self.settings.audience,
            "state": state,
            "scope": " ".join(self.settings.scopes),
        }
        return f"{self.settings.auth_base}/authorize?{urlencode(params)}"

    def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Raises:
            ExchangeFailed: On a non-2xx response or a response without access_token.
        """
        tokens = self._request(
            ExchangeFailed,
            "Token exchange",
            "POST",
            f"{self.settings.auth_base}/oauth/token",
            json={
                "grant_type": "authorization_code",
                "client_id": self.settings.client_id,
                "code": code,
                "redirect_uri": self.settings.redirect_uri,
                "audience": self.settings.audience,
            },
        )
        if not tokens.get("access_token"):
            raise ExchangeFailed("Expected access_token in token response")
        return tokens

    def refresh(self, refresh_token: str) -> dict[str, Any]:
        """Trade a refresh token for a new token set.

        Raises:
            RefreshFailed: On a non-2xx response or a response without access_token.
        """
        tokens = self._request(
            RefreshFailed,
            "Token refresh",
            "POST",
            f"{self.settings.auth_base}/oauth/token",
            json={
                "grant_type": "refresh_token",
                "client_id": self.settings.client_id,
                "refresh_token": refresh_token,
            },
        )
        if not tokens.get("access_token"):
            raise RefreshFailed("Expected access_token in refresh response")
        return tokens

    def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        """Profile of the user the access token belongs to."""
        return self._request(
            UserInfoFailed,
            "User info",
            "GET",
            f"{self.settings.auth_base}/userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def mint_api_key(self, access_token: str) -> str:
        """Issue a service API key for the account.

        Raises:
            ApiKeyMintFailed: On a non-2xx response or a response without api_key.
        """
        data = self._request(
            ApiKeyMintFailed,
            "API key generation",
            "POST",
            f"{self.settings.api_base}/api/engines/token",
            json={},
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        api_key = data.get("api_key")
        if not api_key:
            raise ApiKeyMintFailed("Expected api_key in response")
        return api_key

    def _request(
        self,
        error_cls: type[TokenServiceError],
        label: str,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send a request and decode a JSON object, mapping failures to ``error_cls``."""
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            _log.error("%s request to %s failed: %s", label, url, exc)
            raise error_cls(f"{label} failed: {exc}") from exc

        if response.is_error:
            reason = _describe_error(response)
            _log.error("%s failed with HTTP %s", label, response.status_code)
            raise error_cls(f"{label} failed: {reason}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise error_cls(f"{label} returned invalid JSON", status_code=response.status_code) from exc
        if not isinstance(data, dict):
            raise error_cls(f"{label} returned an unexpected payload", status_code=response.status_code)
        _log.debug("%s succeeded", label)
        return data
