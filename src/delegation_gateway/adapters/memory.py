"""
In-memory adapters — thread-safe implementations of the storage ports.

Used by the test-suite and by embedders that keep state elsewhere. Each
store guards its state with a single threading.Lock; the audit store keeps
the same arena + (grant_id, sequence) index layout as the PostgreSQL table
and performs the optimistic version check under that lock.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from uuid import UUID

from railway import ErrorCode
from railway.result import Result

from delegation_gateway.domain.models import (
    AuditEvent,
    DebtQueryResult,
    DelegationGrant,
    DigitalCertificate,
    GrantStatus,
    IssuedGuide,
)


class InMemoryDelegationRepository:
    """Implements DelegationRepository over a dict keyed by grant id."""

    def __init__(self, grants: list[DelegationGrant] | None = None) -> None:
        self._lock = threading.Lock()
        self._grants: dict[UUID, DelegationGrant] = {g.id: g for g in grants or []}

    def save(
        self, grant: DelegationGrant, expected_status: GrantStatus | None = None
    ) -> Result[DelegationGrant]:
        with self._lock:
            stored = self._grants.get(grant.id)
            if expected_status is not None and (stored is None or stored.status is not expected_status):
                return Result.failure(
                    ErrorCode.INVALID_TRANSITION,
                    f"Grant {grant.id} is no longer {expected_status.value}",
                    details={
                        "expected_status": expected_status.value,
                        "status": stored.status.value if stored else None,
                    },
                )
            self._grants[grant.id] = grant
        return Result.success(grant)

    def find_by_id(self, grant_id: UUID) -> Result[DelegationGrant]:
        with self._lock:
            grant = self._grants.get(grant_id)
        return Result.from_optional(grant, f"Grant {grant_id} not found")

    def find_by_client(
        self,
        client_id: str,
        status: GrantStatus | None = None,
        valid_after: datetime | None = None,
        limit: int | None = None,
    ) -> Result[list[DelegationGrant]]:
        with self._lock:
            grants = [g for g in self._grants.values() if g.client_id == client_id]
        if status is not None:
            grants = [g for g in grants if g.status is status]
        if valid_after is not None:
            grants = [g for g in grants if g.valid_until > valid_after]
            grants.sort(key=lambda g: g.valid_until, reverse=True)
        else:
            grants.sort(key=lambda g: g.issued_at or g.valid_until, reverse=True)
        if limit is not None:
            grants = grants[:limit]
        return Result.success(grants)


class InMemoryCredentialStore:
    """Implements CredentialStore over a dict keyed by certificate id."""

    def __init__(self, certificates: list[DigitalCertificate] | None = None) -> None:
        self._lock = threading.Lock()
        self._certificates = {c.id: c for c in certificates or []}

    def add(self, certificate: DigitalCertificate) -> None:
        with self._lock:
            self._certificates[certificate.id] = certificate

    def find_certificate(self, certificate_id: UUID) -> Result[DigitalCertificate]:
        with self._lock:
            certificate = self._certificates.get(certificate_id)
        return Result.from_optional(certificate, f"Certificate {certificate_id} not found")


class InMemoryAuditLogStore:
    """
    Implements AuditLogStore as an append-only arena plus a per-grant index.

    `_arena` holds every event ever appended; `_index[grant_id]` lists the arena
    positions of that grant's events in sequence order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._arena: list[AuditEvent] = []
        self._index: defaultdict[UUID, list[int]] = defaultdict(list)

    def load(self, grant_id: UUID) -> Result[list[AuditEvent]]:
        with self._lock:
            positions = list(self._index.get(grant_id, ()))
            return Result.success([self._arena[p] for p in positions])

    def version(self, grant_id: UUID) -> Result[int]:
        with self._lock:
            return Result.success(len(self._index.get(grant_id, ())))

    def append_if_version(
        self, grant_id: UUID, expected_version: int, event: AuditEvent
    ) -> Result[AuditEvent]:
        with self._lock:
            current = len(self._index.get(grant_id, ()))
            if current != expected_version:
                return Result.failure(
                    ErrorCode.AUDIT_VERSION_CONFLICT,
                    f"Audit log of grant {grant_id} is at version {current}, expected {expected_version}",
                    details={"expected_version": expected_version, "current_version": current},
                )
            stored = event.at_sequence(current + 1)
            self._arena.append(stored)
            self._index[grant_id].append(len(self._arena) - 1)
            return Result.success(stored)


class InMemoryResultStore:
    """Implements ResultStore; keeps every saved result per client in arrival order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.debts: defaultdict[str, list[DebtQueryResult]] = defaultdict(list)
        self.guides: defaultdict[str, list[IssuedGuide]] = defaultdict(list)

    def save_debts(self, client_id: str, result: DebtQueryResult) -> Result[int]:
        with self._lock:
            self.debts[client_id].append(result)
        return Result.success(result.total_found)

    def save_guide(self, client_id: str, guide: IssuedGuide) -> Result[IssuedGuide]:
        with self._lock:
            self.guides[client_id].append(guide)
        return Result.success(guide)
