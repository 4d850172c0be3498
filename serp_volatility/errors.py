"""Error taxonomy for request handling.

Each error carries the HTTP-style status and the stable code that ends up in
the {"error": {"code", "message"}} envelope. Malformed observation payloads
are not errors: extraction degrades them to empty results plus a warning.
"""

from __future__ import annotations

from typing import Any, Dict


class VolatilityError(Exception):
    """Base class for errors that map onto an error envelope."""

    status = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message

    def to_body(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class InvalidInputError(VolatilityError):
    """Malformed identifier or out-of-range parameter. Raised before any store read."""

    status = 400
    code = "BAD_REQUEST"


class NotFoundError(VolatilityError):
    """Missing record, or a record that belongs to another tenant.

    Callers cannot tell the two cases apart.
    """

    status = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Tracked query not found"):
        super().__init__(message)


def server_error() -> VolatilityError:
    """Generic 500. The real exception is logged, never returned."""
    return VolatilityError("Internal server error")
