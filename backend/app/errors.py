"""
errors.py: AppError base class and error code registry.

Every error returned by the SessionGuard API must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
    Clients branch on them (see client/errors.py::classify_error_code).
  - Error messages are human-readable prose. They may be improved at any time.
  - Never conflate 401 (unauthenticated) with 403 (unauthorized).
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    DUPLICATE_EMAIL            = "DUPLICATE_EMAIL"
    DUPLICATE_USERNAME         = "DUPLICATE_USERNAME"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    USER_NOT_FOUND             = "USER_NOT_FOUND"

    # ── Access token errors (401) ──────────────────────────────────────────
    # TOKEN_EXPIRED is the only refreshable code: signature valid, exp passed.
    # TOKEN_INVALID is fatal for the request; a refresh cannot repair it.
    INVALID_CREDENTIALS        = "INVALID_CREDENTIALS"
    TOKEN_MISSING              = "TOKEN_MISSING"
    TOKEN_INVALID              = "TOKEN_INVALID"
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"

    # ── Refresh token errors (401) ─────────────────────────────────────────
    # All three end the client session; they are kept distinct so clients
    # and logs can tell a replayed token from an aged-out one.
    REFRESH_TOKEN_NOT_FOUND    = "REFRESH_TOKEN_NOT_FOUND"
    REFRESH_TOKEN_REVOKED      = "REFRESH_TOKEN_REVOKED"
    REFRESH_TOKEN_EXPIRED      = "REFRESH_TOKEN_EXPIRED"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"


# Codes a client may recover from by rotating its refresh token.
REFRESHABLE_CODES: frozenset[str] = frozenset({ErrorCode.TOKEN_EXPIRED})

# Codes that terminate the whole client session.
SESSION_FATAL_CODES: frozenset[str] = frozenset({
    ErrorCode.REFRESH_TOKEN_NOT_FOUND,
    ErrorCode.REFRESH_TOKEN_REVOKED,
    ErrorCode.REFRESH_TOKEN_EXPIRED,
})
