"""
auth/errors.py -- Domain error taxonomy shared by auth/ and admin/.

Services raise these; they never build HTTP responses themselves. The API
layer installs one exception handler (api/main.py) that turns any
ServiceError into the standard envelope:

    {"error": {"code": "<code>", "message": "<message>"}}

Each subclass fixes the HTTP status for its family:

  ValidationError   400  malformed input, bad OAuth state, code exchange failure
  UnauthorizedError 401  missing/invalid credentials or tokens
  ForbiddenError    403  hierarchy and escalation denials (never 401)
  NotFoundError     404  unknown account or role
  ConflictError     409  role already assigned, last admin, last login method

Enumeration resistance: login and refresh failures use one code/message pair
per failure mode regardless of whether the account exists. Keep it that way
when adding new paths -- the message must not depend on account existence.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for every recoverable domain failure."""

    status_code: int = 400

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(ServiceError):
    status_code = 400


class UnauthorizedError(ServiceError):
    status_code = 401


class TokenError(UnauthorizedError):
    """Refresh-token redemption failure (expired, already used, invalidated)."""


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


# ---------------------------------------------------------------------------
# Messages -- one place so tests and routes agree on the exact wording
# ---------------------------------------------------------------------------

INVALID_CREDENTIALS = "Invalid email or password."
ACCOUNT_LOCKED = "Account is temporarily locked. Please try again later or contact an administrator."
NOT_AUTHENTICATED = "Authentication required."
TOKEN_EXPIRED = "Refresh token has expired."
TOKEN_ALREADY_USED = "Refresh token has already been used."
TOKEN_INVALIDATED = "Refresh token has been invalidated."
LAST_ADMIN_CANNOT_DELETE_SELF = "You cannot delete your account while you are the last user holding an administrative role."
