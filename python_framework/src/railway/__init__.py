"""
Railway-Oriented Programming (ROP) support for the delegation gateway.

Explicit, composable error handling — expected conditions travel as values,
never as exceptions:

    from railway import Result, ErrorCode

    def require_scope(services: frozenset[str], required: frozenset[str]) -> Result[frozenset[str]]:
        if not required <= services:
            return Result.failure(ErrorCode.INSUFFICIENT_SCOPE, "missing permissions")
        return Result.success(services)
"""

from railway.result import Result, Success, Failure
from railway.failure import ErrorCode, FailureDescription
from railway.execution import (
    ExecutionContext,
    NoOpExecutionContext,
    LoggingExecutionContext,
)
from railway.assertions import ResultAssertions

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]

__version__ = "1.1.0"
