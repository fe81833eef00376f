"""Standardized error types for the prediction engine.

Steady-state failures (transport problems, stale responses, empty diffs,
operations invoked in the wrong state) are absorbed by the engine and turned
into state transitions. Only :class:`ConfigurationError` is meant to reach the
caller, and only at setup time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for machine-readable error codes."""

    # Transport errors
    TRANSPORT_FAILED = "transport_failed"
    TRANSPORT_TIMEOUT = "transport_timeout"
    TRANSPORT_HTTP_STATUS = "transport_http_status"
    TRANSPORT_BAD_PAYLOAD = "transport_bad_payload"

    # Lifecycle outcomes
    STALE_RESPONSE = "stale_response"
    EMPTY_DIFF = "empty_diff"
    INVALID_STATE = "invalid_state"

    # Setup errors
    INVALID_CONFIGURATION = "invalid_configuration"

    INTERNAL_ERROR = "internal_error"


@dataclass
class NextEditError(Exception):
    """Base exception class for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logging and diagnostics."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class TransportError(NextEditError):
    """Network or backend failure while fetching a prediction.

    Recovered locally: the owning document returns to ``idle``.
    """

    error_code: str = field(default=ErrorCode.TRANSPORT_FAILED)
    message: str = field(default="Prediction backend request failed")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result = NextEditError.to_dict(self)
        result["retryable"] = self.retryable
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass
class TransportTimeout(TransportError):
    """Raised when a request stays in flight longer than the configured bound."""

    error_code: str = field(default=ErrorCode.TRANSPORT_TIMEOUT)
    message: str = field(default="Prediction request timed out")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = True
    status_code: int | None = None
    timeout_seconds: float | None = None


@dataclass
class StaleResponse(NextEditError):
    """A response arrived after a newer trigger superseded its request."""

    error_code: str = field(default=ErrorCode.STALE_RESPONSE)
    message: str = field(default="Response superseded by a newer trigger")
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    latest_sequence: int = 0

    severity: ClassVar[str] = "info"


@dataclass
class EmptyDiff(NextEditError):
    """The candidate text equals the snapshot; there is nothing to show."""

    error_code: str = field(default=ErrorCode.EMPTY_DIFF)
    message: str = field(default="Prediction produced no changes")
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "info"


@dataclass
class InvalidStateTransition(NextEditError):
    """An operation was requested in a state where it has no meaning."""

    error_code: str = field(default=ErrorCode.INVALID_STATE)
    message: str = field(default="Operation not valid in the current state")
    details: dict[str, Any] = field(default_factory=dict)
    operation: str = ""
    state: str = ""

    severity: ClassVar[str] = "warning"


@dataclass
class ConfigurationError(NextEditError):
    """Invalid configuration detected while setting up the engine."""

    error_code: str = field(default=ErrorCode.INVALID_CONFIGURATION)
    message: str = field(default="Invalid configuration")
    details: dict[str, Any] = field(default_factory=dict)
    field_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = NextEditError.to_dict(self)
        if self.field_name:
            result["field"] = self.field_name
        return result


__all__ = [
    "ErrorCode",
    "NextEditError",
    "TransportError",
    "TransportTimeout",
    "StaleResponse",
    "EmptyDiff",
    "InvalidStateTransition",
    "ConfigurationError",
]
