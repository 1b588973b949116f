"""
client/errors.py: Session error taxonomy and server error-code mapping.

  AccessExpiredError      refreshable; SessionClient recovers it by refresh + replay
  AccessInvalidError      fatal for the request; never triggers a refresh
  SessionExpiredError     fatal for the session (refresh token not found,
                          revoked or expired); the user must sign in again
  RefreshTransientError   network/timeout/5xx during refresh; no logout
  SessionTerminatedError  operation attempted on, or pending during, a
                          logged-out or closed session
  AuthRequestError        any other error returned by the /auth endpoints
"""

from __future__ import annotations

import httpx


class SessionError(Exception):

    def __init__(
            self,
            message: str,
            *,
            code: str | None = None,
            status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(code={self.code!r}, "
            f"status_code={self.status_code}, message={self.message!r})"
        )


class AccessExpiredError(SessionError):
    pass


class AccessInvalidError(SessionError):
    pass


class SessionExpiredError(SessionError):
    """The refresh token can no longer be used; sign in again."""


class RefreshNotFoundError(SessionExpiredError):
    pass


class RefreshRevokedError(SessionExpiredError):
    pass


class RefreshExpiredError(SessionExpiredError):
    pass


class RefreshTransientError(SessionError):
    """Refresh did not complete. The old token pair is still installed."""


class SessionTerminatedError(SessionError):
    pass


class AuthRequestError(SessionError):
    pass


# Server codes, see backend/app/errors.py::ErrorCode.
_ERRORS_BY_CODE: dict[str, type[SessionError]] = {
    "TOKEN_EXPIRED": AccessExpiredError,
    "TOKEN_INVALID": AccessInvalidError,
    "TOKEN_MISSING": AccessInvalidError,
    "REFRESH_TOKEN_NOT_FOUND": RefreshNotFoundError,
    "REFRESH_TOKEN_REVOKED": RefreshRevokedError,
    "REFRESH_TOKEN_EXPIRED": RefreshExpiredError,
}


def classify_error_code(code: str | None) -> type[SessionError] | None:
    """Maps a server error code to its session error class, or None if not auth-related."""
    if code is None:
        return None
    return _ERRORS_BY_CODE.get(code)


def read_error(response: httpx.Response) -> tuple[str | None, str]:
    """Returns (code, message) from the standard {"error": {...}} envelope."""
    try:
        body = response.json()
    except ValueError:
        return None, response.reason_phrase or f"HTTP {response.status_code}"

    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return None, f"HTTP {response.status_code}"
    return error.get("code"), error.get("message") or f"HTTP {response.status_code}"


def access_error_from_response(response: httpx.Response) -> SessionError | None:
    """
    Classifies a protected-endpoint response.

    Returns None for anything but a 401. A 401 carrying an unknown code is
    treated as AccessInvalidError so it never loops through refresh.
    """
    if response.status_code != 401:
        return None

    code, message = read_error(response)
    error_class = classify_error_code(code)
    if error_class is None or issubclass(error_class, SessionExpiredError):
        error_class = AccessInvalidError
    return error_class(message, code=code, status_code=response.status_code)
