"""Exception taxonomy for the streaming session engine."""

from typing import Any, Optional


class SiftError(Exception):
    """Base class for errors raised by the session engine and its collaborators."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def type_name(self) -> str:
        return self.__class__.__name__

    def to_payload(self) -> dict:
        return {"type": self.type_name, "message": self.message}


class ValidationError(SiftError):
    """Missing or invalid input, rejected before any generation starts."""

    status_code = 400


class GenerationInProgressError(SiftError):
    """A generation is already in flight for this session."""

    status_code = 409


class NoConversationError(SiftError):
    """A follow-up was requested before any analysis was started."""

    status_code = 409


class NoCheckpointError(SiftError):
    """Restart was requested but nothing has been generated yet."""

    status_code = 409


class SessionNotFoundError(SiftError):
    status_code = 404


class AnalysisNotFoundError(SiftError):
    status_code = 404


class PersistenceError(SiftError):
    """Storage failure while recording a turn."""


class ProtocolError(SiftError):
    """The peer went away mid-stream. Handled as a clean stop, never emitted."""


class AdapterError(SiftError):
    """Failure reported by a model adapter (auth, quota, malformed request, transport).

    Args:
        message: Human-readable description
        kind: Type tag sent to the client in the ``error`` event
        details: Optional opaque provider payload (usually the response body)
    """

    status_code = 502

    def __init__(self, message: str, kind: str = "ProviderError", details: Optional[Any] = None):
        super().__init__(message)
        self.kind = kind
        self.details = details

    @property
    def type_name(self) -> str:
        return self.kind

    def to_payload(self) -> dict:
        payload = {"type": self.kind, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload
