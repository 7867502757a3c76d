"""
Error taxonomy for the relay.

Every error the relay surfaces carries a `kind` (stable string the client can
switch on), an HTTP status for the rejected-request path, and a human-readable
message. The same pair (kind, message) is what goes into an in-band SSE error
event once a stream is already open.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base for everything the relay reports to a client."""

    kind = "RelayError"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class AuthenticationError(RelayError):
    kind = "AuthenticationError"
    status_code = 401


class ValidationError(RelayError):
    """Missing or invalid request fields. Raised before anything is persisted."""
    kind = "ValidationError"
    status_code = 400


class NotFoundError(RelayError):
    """Conversation missing, not owned by the caller, or companion mismatch."""
    kind = "NotFoundError"
    status_code = 404


class ConflictError(RelayError):
    """Another exchange is already in flight on the same conversation."""
    kind = "ConflictError"
    status_code = 409


class UpstreamError(RelayError):
    """Provider unreachable, non-2xx, or over the timeout ceiling."""
    kind = "UpstreamError"
    status_code = 502

    def __init__(self, message: str = "", status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class EmptyCompletionError(RelayError):
    """The provider produced no text at all."""
    kind = "EmptyCompletionError"
    status_code = 502


class PersistenceError(RelayError):
    """A transcript write failed (user turn or assistant turn)."""
    kind = "PersistenceError"
    status_code = 500
