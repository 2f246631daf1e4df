"""
HTTP integration — ErrorCode→HTTP status mapping and response builders.

Used by the gateway's FastAPI surface to turn a Result into a JSON response.

    status = HttpStatusMapper.map_error_code(ErrorCode.NO_VALID_DELEGATION)  # → 404
    return build_fastapi_response(result, success_status=201)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, TypeVar

from fastapi.responses import JSONResponse

from railway.failure import ErrorCode, FailureDescription
from railway.result import Result

T = TypeVar("T")


class HttpStatusMapper:
    """Maps ErrorCode enum values to HTTP status codes."""

    _CODE_TO_STATUS: dict[ErrorCode, int] = {
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.AUTHENTICATION_ERROR: 401,
        ErrorCode.INSUFFICIENT_SCOPE: 403,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.NO_VALID_DELEGATION: 404,
        ErrorCode.INVALID_TRANSITION: 409,
        ErrorCode.AUDIT_VERSION_CONFLICT: 409,
        ErrorCode.DATABASE_ERROR: 500,
        ErrorCode.CONFIGURATION_ERROR: 500,
        ErrorCode.AUDIT_PERSISTENCE_ERROR: 500,
        ErrorCode.UPSTREAM_OPERATION_ERROR: 502,
        ErrorCode.NETWORK_TIMEOUT: 504,
        ErrorCode.UNKNOWN_ERROR: 500,
    }

    @classmethod
    def map_error_code(cls, code: ErrorCode) -> int:
        return cls._CODE_TO_STATUS.get(code, 500)

    @classmethod
    def map_failure(cls, failure: FailureDescription) -> int:
        return cls.map_error_code(failure.code)


@dataclass(frozen=True, slots=True)
class ErrorResponse:
    """
    Standardized error response body.

        {
            "error_code": "NO_VALID_DELEGATION",
            "message": "No issued, unexpired grant for client ...",
            "retryable": false,
            "details": {},
            "timestamp": "2026-02-17T10:30:00+00:00"
        }
    """

    error_code: str
    message: str
    retryable: bool
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_failure(failure: FailureDescription) -> ErrorResponse:
        return ErrorResponse(
            error_code=failure.code.value,
            message=failure.message,
            retryable=failure.retryable,
            timestamp=failure.timestamp.isoformat(),
            details={k: _jsonable(v) for k, v in failure.details.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


def build_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> tuple[Any, int]:
    """
    Build a (body, status_code) tuple from a Result.

        body, status = build_response(result, success_status=201, serializer=to_json)
    """
    return result.either(
        on_success=lambda value: (
            serializer(value) if serializer is not None else value,
            success_status,
        ),
        on_failure=lambda error: (
            ErrorResponse.from_failure(error).to_dict(),
            HttpStatusMapper.map_failure(error),
        ),
    )


def build_fastapi_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> JSONResponse:
    """Build a FastAPI JSONResponse from a Result."""
    body, status = build_response(result, success_status, serializer)
    return JSONResponse(content=body, status_code=status)
