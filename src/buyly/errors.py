"""Error types shared by every handler.

Each error carries the HTTP status used by request handlers and the short
error code returned to callable clients (``not-found``, ``permission-denied``
and so on). Background triggers never surface these to a caller; they log
them instead.
"""


class BuylyError(Exception):
    """Base class for errors with a client-visible meaning."""

    status = 500
    code = "internal"

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationError(BuylyError):
    """A required credential or setting is missing."""

    status = 500
    code = "failed-precondition"


class UnauthenticatedError(BuylyError):
    status = 401
    code = "unauthenticated"


class ValidationError(BuylyError, ValueError):
    """Malformed input, rejected before any side effect."""

    status = 400
    code = "invalid-argument"


class NotFoundError(BuylyError):
    status = 404
    code = "not-found"


class PermissionDeniedError(BuylyError):
    status = 403
    code = "permission-denied"


class AlreadyExistsError(BuylyError):
    status = 409
    code = "already-exists"


class UpstreamError(BuylyError):
    """A managed dependency (store, auth, email, push, AI) failed."""

    status = 500
    code = "internal"
