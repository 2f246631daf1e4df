"""
AuditTrail — append-only, ordered event log per delegation grant.

Events are kept by the AuditLogStore as an arena indexed by
(grant_id, sequence). Appending is the single serialization point of the
gateway, handled with optimistic versioning:

  version(grant_id) → n
    → append_if_version(grant_id, n, event)   # stored as sequence n + 1
      → AUDIT_VERSION_CONFLICT if another writer got n + 1 first
        → re-read version, try again (tenacity, exponential backoff)

No event is ever updated, removed or reordered. A writer that still loses
after `max_attempts` gets AUDIT_PERSISTENCE_ERROR and its event is not
stored; `gateway.audit_max_attempts` sets that bound. Masking of sensitive
values happens in `record`, before the event is built.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result
from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from delegation_gateway.domain.masking import mask_details
from delegation_gateway.domain.models import AuditEvent
from delegation_gateway.domain.ports import AuditLogStore

log = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _is_conflict(result: Result[AuditEvent]) -> bool:
    return result.has_code(ErrorCode.AUDIT_VERSION_CONFLICT)


def _as_persistence_failure(
    err: FailureDescription, grant_id: UUID, event: AuditEvent
) -> FailureDescription:
    if err.code is ErrorCode.AUDIT_PERSISTENCE_ERROR:
        return err
    return FailureDescription.create(
        ErrorCode.AUDIT_PERSISTENCE_ERROR,
        f"Audit event {event.action} could not be stored: {err.message}",
        err.exception,
        {**err.details, "cause": err.code.value, "grant_id": str(grant_id)},
    )


class AuditTrail:
    """
    Append and read audit events for grants.

    `max_attempts` bounds the retries on version conflicts; `backoff_seconds`
    is the first exponential wait (0 disables waiting, useful in tests).
    """

    def __init__(
        self,
        store: AuditLogStore,
        max_attempts: int = 10,
        backoff_seconds: float = 0.01,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._clock = clock
        self._retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=backoff_seconds, max=backoff_seconds * 32),
            retry=retry_if_result(_is_conflict),
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        )

    def append(self, grant_id: UUID, event: AuditEvent) -> Result[AuditEvent]:
        """
        Append `event` to the grant's log and return it with its sequence number.

        Conflicts are retried; any failure left after that is reported as
        AUDIT_PERSISTENCE_ERROR so callers can decide whether it is fatal.
        """
        result: Result[AuditEvent] = self._retrying(self._append_once, grant_id, event)
        return result.peek_failure(
            lambda err: log.warning(
                "audit.append_failed",
                grant_id=str(grant_id),
                action=event.action,
                code=err.code.value,
                error=err.message,
            )
        ).map_failure(lambda err: _as_persistence_failure(err, grant_id, event))

    def _append_once(self, grant_id: UUID, event: AuditEvent) -> Result[AuditEvent]:
        def _try(version: int) -> Result[AuditEvent]:
            outcome = self._store.append_if_version(grant_id, version, event)
            if _is_conflict(outcome):
                log.debug("audit.append_conflict", grant_id=str(grant_id), expected_version=version)
            return outcome

        return self._store.version(grant_id).flat_map(_try)

    def record(
        self,
        grant_id: UUID,
        action: str,
        outcome: str,
        details: Mapping[str, Any] | None = None,
    ) -> Result[AuditEvent]:
        """Build a masked event stamped with the current time and append it."""
        event = AuditEvent(
            occurred_at=self._clock(),
            action=str(action),
            outcome=outcome,
            details=mask_details(details),
        )
        return self.append(grant_id, event)

    def read(self, grant_id: UUID) -> Result[list[AuditEvent]]:
        """Full ordered log for the grant, oldest first. Empty if none was written."""
        return self._store.load(grant_id)
