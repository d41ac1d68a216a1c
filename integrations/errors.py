from __future__ import annotations

from typing import Any, Optional


class ApiClientError(Exception):
    """Base class for everything the storefront API client raises."""


class NetworkError(ApiClientError):
    """The request never produced an HTTP response (DNS, connect, timeout...)."""


class ApiError(ApiClientError):
    """The backend answered with a non-2xx status (or an unreadable body)."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body if body is not None else {}

    def __repr__(self):
        return f"{type(self).__name__}(status={self.status!r}, message={self.message!r})"


class SessionExpiredError(ApiError):
    """HTTP 401. The client has already dropped its token when this is raised."""


class AbortError(ApiClientError):
    """
    The request was superseded by a newer one under the same logical key,
    or cancelled explicitly. Never shown to the user.
    """

    def __init__(self, key: Optional[str] = None):
        super().__init__(f"Request '{key}' was cancelled" if key else "Request was cancelled")
        self.key = key


# What views may show and recover from
RECOVERABLE_ERRORS = (ApiError, NetworkError)
