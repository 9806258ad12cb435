#!/usr/bin/env python3
"""Canvas API error taxonomy."""

from typing import List, Optional

RATE_LIMIT_STATUSES = (420, 425, 429)
AUTH_STATUSES = (401, 403)

STATUS_MEANINGS = {
    420: "Enhance Your Hype (cooldown active)",
    425: "Too Early (rate limited)",
    429: "Too Many Requests (rate limited)",
}


class CanvasError(Exception):
    """Base class for every failure surfaced by the canvas client."""


class TransportError(CanvasError):
    """Network or IO failure before a usable response arrived."""


class ProtocolError(CanvasError):
    """Response violated the expected protocol (bad 426, malformed JSON)."""


class AuthError(CanvasError):
    """Credentials were rejected (401/403 or explicit unauthorized)."""

    def __init__(self, message: str = "Unauthorized - check tokens", status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ApiResponseError(CanvasError):
    """Non-2xx response carrying a structured `{message, timers?, interval?}` body."""

    def __init__(
        self,
        status: int,
        message: str,
        timers: Optional[List[int]] = None,
        interval: Optional[int] = None
    ):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message
        self.timers = timers
        self.interval = interval


class RateLimitError(ApiResponseError):
    """420/425/429: recoverable at pixel granularity."""


class UnexpectedResponseError(CanvasError):
    """Non-2xx response whose body could not be classified."""

    def __init__(self, status: int, body: str):
        super().__init__(f"Request failed with status {status}: {body[:200]!r}")
        self.status = status
        self.body = body


def describe_error(error: CanvasError, now_ms: int) -> str:
    """Render an error for the status log.

    Rate-limit errors are expanded with the remaining time on every timer
    the server reported, the retry interval and the meaning of the status.

    Args:
        error: Error to describe
        now_ms: Current time in epoch milliseconds

    Returns:
        Human-readable message
    """
    if not isinstance(error, ApiResponseError):
        return str(error)

    parts = [error.message]

    if error.timers:
        rendered = []
        for i, timer in enumerate(error.timers, start=1):
            remaining = (timer - now_ms) / 1000.0
            if remaining > 0:
                rendered.append(f"T{i}({remaining:.1f}s)")
            else:
                rendered.append(f"T{i}(expired)")
        parts.append("Active Timers: " + ", ".join(rendered))

    if error.interval is not None:
        parts.append(f"Retry Interval: {error.interval / 1000.0:.1f}s")

    meaning = STATUS_MEANINGS.get(error.status)
    if meaning:
        parts.append(f"Status: {meaning}")

    return " | ".join(parts)
