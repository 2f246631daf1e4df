"""
Ports — Protocol-based interfaces for infrastructure adapters.

These define WHAT the gateway needs from the outside world without
specifying HOW. Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Every port returns Result[T]; adapters convert their exceptions into
failures at the boundary.

Collaborators:
  - DelegationRepository / CredentialStore / AuditLogStore / ResultStore → storage
  - JurisdictionClient  → the ~27 state tax authority APIs
  - ProcurationPortal   → the federal portal where procurations are issued
  - ProofDocumentStore  → keeps the proof-of-issuance receipt
  - FallbackJobQueue    → legacy data collection when no delegation exists
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from railway.result import Result

from delegation_gateway.domain.models import (
    AuditEvent,
    AuthPayload,
    DebtQueryResult,
    DelegationGrant,
    DigitalCertificate,
    FallbackJob,
    GrantStatus,
    GuideRequest,
    IssuedGuide,
    JurisdictionConfig,
    PortalSession,
    RemoteToken,
    SessionToken,
)


@runtime_checkable
class DelegationRepository(Protocol):
    """
    Port: durable storage of DelegationGrant aggregates.

    `save` with `expected_status` only writes when the stored grant still has
    that status; otherwise nothing changes and INVALID_TRANSITION is returned.

    `find_by_client` with `valid_after` returns grants ordered by `valid_until`
    descending; without it, newest `issued_at` first. `limit` bounds the scan.
    """

    def save(
        self, grant: DelegationGrant, expected_status: GrantStatus | None = None
    ) -> Result[DelegationGrant]: ...

    def find_by_id(self, grant_id: UUID) -> Result[DelegationGrant]: ...

    def find_by_client(
        self,
        client_id: str,
        status: GrantStatus | None = None,
        valid_after: datetime | None = None,
        limit: int | None = None,
    ) -> Result[list[DelegationGrant]]: ...


@runtime_checkable
class CredentialStore(Protocol):
    """Port: read access to clients' digital certificates."""

    def find_certificate(self, certificate_id: UUID) -> Result[DigitalCertificate]: ...


@runtime_checkable
class AuditLogStore(Protocol):
    """
    Port: append-only event storage with optimistic versioning.

    The version of a grant's log is the number of events it holds.
    `append_if_version` must fail with AUDIT_VERSION_CONFLICT when another
    writer appended first; it never overwrites or reorders existing events.
    """

    def load(self, grant_id: UUID) -> Result[list[AuditEvent]]: ...

    def version(self, grant_id: UUID) -> Result[int]: ...

    def append_if_version(
        self, grant_id: UUID, expected_version: int, event: AuditEvent
    ) -> Result[AuditEvent]: ...


@runtime_checkable
class ResultStore(Protocol):
    """Port: keeps normalized remote results for the surrounding application."""

    def save_debts(self, client_id: str, result: DebtQueryResult) -> Result[int]: ...

    def save_guide(self, client_id: str, guide: IssuedGuide) -> Result[IssuedGuide]: ...


@runtime_checkable
class JurisdictionClient(Protocol):
    """
    Port: generic client for any state tax authority described by a JurisdictionConfig.

    Remote business errors map to UPSTREAM_OPERATION_ERROR (or
    AUTHENTICATION_ERROR on the auth endpoint); transport failures map to
    NETWORK_TIMEOUT. Raw payloads are returned untouched for normalization.
    """

    def authenticate(
        self, config: JurisdictionConfig, payload: AuthPayload
    ) -> Result[RemoteToken]: ...

    def query_debts(
        self, config: JurisdictionConfig, session: SessionToken, tax_id: str
    ) -> Result[dict]: ...

    def issue_guide(
        self, config: JurisdictionConfig, session: SessionToken, request: GuideRequest
    ) -> Result[dict]: ...


@runtime_checkable
class ProcurationPortal(Protocol):
    """
    Port: the remote portal where procurations are registered.

    The issuance sequence is authenticate → open form → submit → retrieve proof.
    """

    def authenticate(
        self, certificate: DigitalCertificate, client_id: str
    ) -> Result[PortalSession]: ...

    def open_procuration_form(self, session: PortalSession) -> Result[str]: ...

    def submit_procuration(
        self, session: PortalSession, grant: DelegationGrant
    ) -> Result[str]: ...

    def retrieve_proof(self, session: PortalSession, grant_reference: str) -> Result[bytes]: ...


@runtime_checkable
class ProofDocumentStore(Protocol):
    """Port: stores a proof-of-issuance blob and returns a retrievable reference."""

    def store(self, client_id: str, grant_id: UUID, document: bytes) -> Result[str]: ...


@runtime_checkable
class FallbackJobQueue(Protocol):
    """Port: enqueue a best-effort legacy collection job; returns the job id."""

    def enqueue(self, job: FallbackJob) -> Result[str]: ...
