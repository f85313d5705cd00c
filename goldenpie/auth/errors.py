"""Auth errors. Each maps to a structured HTTP response, never a 500."""

from typing import Any, Dict


class AuthError(Exception):
    """Base class for auth session failures."""

    http_status = 400
    reason = "Invalid request"

    def __init__(self, reason: str = ""):
        super().__init__(reason or self.reason)
        self.reason = reason or self.reason

    def to_response(self) -> Dict[str, Any]:
        return {"status": "ERROR", "reason": self.reason}


class InvalidRequest(AuthError):
    reason = "Invalid request"


class InvalidNonce(AuthError):
    """Unknown, already-consumed, or expired k1. Deliberately indistinguishable."""
    reason = "Invalid or expired k1"


class InvalidAddress(AuthError):
    reason = "Invalid Lightning address format"


class SessionNotFound(AuthError):
    http_status = 404
    reason = "Session not found"

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.reason, "authenticated": False}


class SessionExpired(SessionNotFound):
    """An expired session behaves exactly like a missing one."""
    reason = "Session not found"
