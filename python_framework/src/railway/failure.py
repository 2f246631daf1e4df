"""
Failure description — structured error information for the failure track.

Every expected failure of the delegation gateway travels as a
FailureDescription: an ErrorCode from the gateway taxonomy, a human message,
the optional originating exception, and a `details` mapping with
machine-readable context (`kind`, `stage`, `remote_status`, ...).

The ErrorCode members are grouped by how callers must react:
  - fallback-eligible: NO_VALID_DELEGATION, INSUFFICIENT_SCOPE
  - caller may retry:  NETWORK_TIMEOUT
  - fatal:             CONFIGURATION_ERROR, DATABASE_ERROR, UNKNOWN_ERROR
"""

from __future__ import annotations

import traceback
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from types import MappingProxyType
from typing import Any, Optional


@unique
class ErrorCode(Enum):
    """
    Error taxonomy of the delegation gateway.

    Organized by HTTP status range for natural REST API mapping.
    """

    # --- Caller-side conditions (4xx HTTP range) ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Malformed request: bad tax id, empty service list, non-positive validity (→ 400)."""

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    """Certificate invalid/expired or credentials rejected by the remote (→ 401)."""

    INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
    """A valid grant exists but lacks the permissions the jurisdiction requires (→ 403)."""

    NOT_FOUND = "NOT_FOUND"
    """Referenced grant or certificate does not exist (→ 404)."""

    NO_VALID_DELEGATION = "NO_VALID_DELEGATION"
    """No issued, unexpired grant is available for the client (→ 404)."""

    INVALID_TRANSITION = "INVALID_TRANSITION"
    """Lifecycle transition not allowed from the grant's current status (→ 409)."""

    AUDIT_VERSION_CONFLICT = "AUDIT_VERSION_CONFLICT"
    """Concurrent audit append lost the optimistic version race (→ 409)."""

    # --- Server-side conditions (5xx HTTP range) ---
    DATABASE_ERROR = "DATABASE_ERROR"
    """Storage unavailable or query failure (→ 500)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Unknown jurisdiction code or missing mandatory setting (→ 500)."""

    AUDIT_PERSISTENCE_ERROR = "AUDIT_PERSISTENCE_ERROR"
    """Audit event could not be stored after the remote side effect happened (→ 500)."""

    UPSTREAM_OPERATION_ERROR = "UPSTREAM_OPERATION_ERROR"
    """Remote tax authority returned a business error or an unusable payload (→ 502)."""

    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    """Remote call timed out or the network failed; transient (→ 504)."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected/unclassified failures (→ 500)."""

    @property
    def is_fallback_eligible(self) -> bool:
        """True when the gateway may answer with a simulated result instead."""
        return self in _FALLBACK_CODES

    @property
    def is_retryable(self) -> bool:
        """True when the caller may retry the same operation with backoff."""
        return self is ErrorCode.NETWORK_TIMEOUT

    @property
    def is_fatal(self) -> bool:
        """True for conditions that indicate a broken deployment, not a bad request."""
        return self in _FATAL_CODES


_FALLBACK_CODES = frozenset({ErrorCode.NO_VALID_DELEGATION, ErrorCode.INSUFFICIENT_SCOPE})
_FATAL_CODES = frozenset(
    {ErrorCode.CONFIGURATION_ERROR, ErrorCode.DATABASE_ERROR, ErrorCode.UNKNOWN_ERROR}
)


def _freeze(details: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(details or {}))


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception,
    structured details and a timestamp.

    >>> desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "attorney tax id must have 11 digits")
    >>> desc.code
    <ErrorCode.VALIDATION_ERROR: 'VALIDATION_ERROR'>
    >>> desc.retryable
    False
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    details: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", _freeze(self.details))

    @staticmethod
    def create(
        code: ErrorCode,
        message: str,
        exception: Optional[BaseException] = None,
        details: Mapping[str, Any] | None = None,
    ) -> FailureDescription:
        return FailureDescription(
            code=code, message=message, exception=exception, details=_freeze(details)
        )

    @property
    def retryable(self) -> bool:
        return self.code.is_retryable

    def with_details(self, **extra: Any) -> FailureDescription:
        """Return a copy with `extra` merged into `details`."""
        return FailureDescription(
            code=self.code,
            message=self.message,
            exception=self.exception,
            details={**self.details, **extra},
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for logs, audit events and HTTP bodies."""
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }

    def full_stack_trace(self) -> str:
        """Full stack trace string including the message and exception chain."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"
