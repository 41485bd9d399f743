from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx


class TrackingError(RuntimeError):
    """Base class for errors surfaced by the tracking core."""

    code = "tracking_error"


class NotFound(TrackingError):
    """A trip id or corridor key does not exist (or the trip is no longer active)."""

    code = "not_found"


class MalformedInput(TrackingError):
    """Missing or invalid coordinates/fields; raised before any state is mutated."""

    code = "malformed_input"


class TransportDegraded(TrackingError):
    """The realtime channel or snapshot endpoint is unavailable. Never fatal on the client side."""

    code = "transport_degraded"


class RateLimited(TrackingError):
    """The server asked the client to slow down (HTTP 429)."""

    code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class TransportErrorInfo:
    code: str
    kind: str
    message: str


def classify_transport_error(exc: Exception) -> TransportErrorInfo:
    """Classify client-side polling/push failures into stable codes for logs."""

    text = str(exc)
    lower = text.lower()

    if isinstance(exc, RateLimited):
        return TransportErrorInfo(code="rate_limited", kind="http", message=text)

    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        if status == 429:
            return TransportErrorInfo(code="rate_limited", kind="http", message=f"HTTP 429 rate limited: {text}")
        if status in {401, 403}:
            return TransportErrorInfo(code="auth", kind="http", message=f"HTTP {status} auth error: {text}")
        return TransportErrorInfo(code=f"http_{status}", kind="http", message=f"HTTP {status}: {text}")

    if isinstance(exc, httpx.TimeoutException):
        return TransportErrorInfo(code="timeout", kind="network", message=text)

    if isinstance(exc, httpx.ConnectError):
        if "name or service not known" in lower or "temporary failure in name resolution" in lower:
            return TransportErrorInfo(code="dns", kind="network", message=text)
        return TransportErrorInfo(code="connect_error", kind="network", message=text)

    if isinstance(exc, httpx.TransportError):
        return TransportErrorInfo(code="transport_error", kind="network", message=text)

    if isinstance(exc, TransportDegraded):
        cause = exc.__cause__
        if isinstance(cause, Exception):
            return classify_transport_error(cause)
        return TransportErrorInfo(code="degraded", kind="network", message=text)

    return TransportErrorInfo(code="unknown", kind="unknown", message=text)
