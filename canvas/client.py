#!/usr/bin/env python3
"""Canvas REST API client."""

import logging
from typing import List, Optional, Tuple

import requests

from .errors import (
    AUTH_STATUSES,
    RATE_LIMIT_STATUSES,
    ApiResponseError,
    AuthError,
    ProtocolError,
    RateLimitError,
    TransportError,
    UnexpectedResponseError,
)
from .models import ApiErrorBody, CanvasSnapshot, PlaceResult, Profile, parse_model
from .tokens import CredentialSink, token_preview

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ftplace.42lausanne.ch"

CANVAS_PATH = "/api/get"
PROFILE_PATH = "/api/profile"
PLACE_PIXEL_PATH = "/api/set"

TOKEN_ROTATED_STATUS = 426

# Set-Cookie value meaning the server revoked the cookie
REVOKED_COOKIE_VALUE = "deleted"


def parse_rotated_tokens(set_cookie_headers: List[str]) -> Tuple[Optional[str], Optional[str]]:
    """Extract `token=` / `refresh=` values from Set-Cookie headers.

    Empty values and the "deleted" sentinel are ignored.

    Returns:
        (access_token, refresh_token), each None when not delivered
    """
    access = None
    refresh = None
    for header in set_cookie_headers:
        pair = header.split(';', 1)[0].strip()
        name, sep, value = pair.partition('=')
        if not sep:
            continue
        value = value.strip()
        if not value or value == REVOKED_COOKIE_VALUE:
            continue
        name = name.strip()
        if name == 'token':
            access = value
        elif name == 'refresh':
            refresh = value
    return access, refresh


def _set_cookie_headers(response: requests.Response) -> List[str]:
    """All Set-Cookie headers, unmerged."""
    raw_headers = getattr(getattr(response, 'raw', None), 'headers', None)
    if raw_headers is not None and hasattr(raw_headers, 'getlist'):
        return list(raw_headers.getlist('Set-Cookie'))
    value = response.headers.get('Set-Cookie')
    return [value] if value else []


class CanvasClient:
    """Client for the shared canvas REST API.

    Every call is one request/retry unit: a 426 response rotates the tokens,
    notifies the credential sink and retries the original request exactly once.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        credential_sink: Optional[CredentialSink] = None,
        timeout: int = 30
    ):
        """Initialize canvas client.

        Args:
            base_url: API server URL (e.g., https://ftplace.42lausanne.ch)
            access_token: `token` cookie value
            refresh_token: `refresh` cookie value
            credential_sink: Notified whenever a 426 rotates the tokens
            timeout: Request timeout in seconds
        """
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.credential_sink = credential_sink
        self.timeout = timeout
        self.session = requests.Session()

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        """Replace both tokens."""
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.session.cookies.clear()

    def clear_tokens(self) -> None:
        """Forget both tokens."""
        self.access_token = None
        self.refresh_token = None
        self.session.cookies.clear()

    def has_tokens(self) -> bool:
        return bool(self.access_token)

    def credentials(self) -> Tuple[str, Optional[str], Optional[str]]:
        """Snapshot of (base_url, access_token, refresh_token) for spawning tasks."""
        return self.base_url, self.access_token, self.refresh_token

    def get_canvas(self) -> CanvasSnapshot:
        """Fetch palette and board.

        Returns:
            CanvasSnapshot

        Raises:
            CanvasError: On any failure
        """
        return self._call('GET', CANVAS_PATH, CanvasSnapshot, "canvas")

    def get_profile(self) -> Profile:
        """Fetch the account profile and its quota.

        Returns:
            Profile

        Raises:
            CanvasError: On any failure
        """
        return self._call(
            'GET', PROFILE_PATH, Profile, "profile",
            headers={'Accept': 'application/json'}
        )

    def set_pixel(self, x: int, y: int, color_id: int) -> PlaceResult:
        """Place one pixel.

        Args:
            x: Absolute board X
            y: Absolute board Y
            color_id: Palette id

        Returns:
            PlaceResult with the refreshed quota

        Raises:
            RateLimitError: On 420/425/429
            AuthError: On 401/403
            CanvasError: On any other failure
        """
        return self._call(
            'POST', PLACE_PIXEL_PATH, PlaceResult, "place-pixel",
            json={"x": x, "y": y, "color": color_id}
        )

    def _cookie_header(self) -> Optional[str]:
        parts = []
        if self.access_token:
            parts.append(f"token={self.access_token}")
        if self.refresh_token:
            parts.append(f"refresh={self.refresh_token}")
        return "; ".join(parts) if parts else None

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = dict(kwargs.pop('headers', None) or {})
        cookie = self._cookie_header()
        if cookie:
            headers['Cookie'] = cookie

        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        finally:
            # tokens live on the client only, never in the session jar
            self.session.cookies.clear()
        return response

    def _call(self, method: str, path: str, model, what: str, **kwargs):
        response = self._send(method, path, **kwargs)

        if response.status_code == TOKEN_ROTATED_STATUS:
            if not self._absorb_rotated_tokens(response):
                raise ProtocolError(
                    f"Received 426 but no new token found in Set-Cookie. Response body: {response.text[:200]!r}"
                )
            logger.info("Tokens rotated by %s %s, retrying once", method, path)
            response = self._send(method, path, **kwargs)

            if response.status_code == TOKEN_ROTATED_STATUS:
                self._absorb_rotated_tokens(response)
                raise ProtocolError(f"{method} {path} answered 426 again after token refresh")

        return self._handle_response(response, model, what)

    def _absorb_rotated_tokens(self, response: requests.Response) -> bool:
        """Apply rotated tokens and notify the sink.

        Returns:
            True if at least one usable token was delivered
        """
        access, refresh = parse_rotated_tokens(_set_cookie_headers(response))
        if access is None and refresh is None:
            return False

        if access is not None:
            self.access_token = access
        if refresh is not None:
            self.refresh_token = refresh

        logger.info(
            "Received rotated tokens (access=%s, refresh %s)",
            token_preview(self.access_token),
            "updated" if refresh is not None else "unchanged"
        )

        if self.credential_sink is not None:
            self.credential_sink.on_credentials_changed(self.access_token, self.refresh_token)
        return True

    def _handle_response(self, response: requests.Response, model, what: str):
        status = response.status_code
        text = response.text

        if 200 <= status < 300:
            try:
                data = response.json()
            except ValueError as e:
                raise ProtocolError(
                    f"Failed to decode {what} response (status {status}): {e}. Body: {text[:200]!r}"
                ) from e
            return parse_model(model, data, what)

        body = None
        try:
            body = ApiErrorBody.from_dict(response.json())
        except (ValueError, KeyError, TypeError, AttributeError):
            body = None

        if status in AUTH_STATUSES:
            raise AuthError(body.message if body else "Unauthorized - check tokens", status=status)

        if status in RATE_LIMIT_STATUSES:
            if body is None:
                raise RateLimitError(status, text or f"HTTP {status}")
            raise RateLimitError(status, body.message, body.timers, body.interval)

        if body is not None:
            raise ApiResponseError(status, body.message, body.timers, body.interval)

        raise UnexpectedResponseError(status, text)
