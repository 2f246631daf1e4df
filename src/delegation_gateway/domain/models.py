"""
Domain models — immutable data structures for grants, certificates, audit
events, jurisdiction configuration and normalized remote results.

All models are frozen dataclasses. A DelegationGrant never mutates: lifecycle
changes produce a new instance through `DelegationGrant.evolve`, which only
accepts the lifecycle fields. `authorized_services` and `valid_until` are
fixed at creation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum, StrEnum, unique
from types import MappingProxyType
from typing import Any, Literal, TypeAlias
from uuid import UUID, uuid4


@unique
class Permission(StrEnum):
    """Services a procuration can authorize."""

    QUERY_DEBTS = "QUERY_DEBTS"
    QUERY_INVOICES = "QUERY_INVOICES"
    ISSUE_GUIDES = "ISSUE_GUIDES"
    CONTEST_ASSESSMENTS = "CONTEST_ASSESSMENTS"


KNOWN_PERMISSIONS: frozenset[str] = frozenset(p.value for p in Permission)


@unique
class CertificateType(Enum):
    CORPORATE_ENTITY = "e-CNPJ"
    INDIVIDUAL = "e-CPF"
    INVOICE_SIGNING = "NF-e"


@unique
class GrantStatus(Enum):
    PENDING = "pending"
    ISSUED = "issued"
    ERROR = "error"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (GrantStatus.ERROR, GrantStatus.EXPIRED, GrantStatus.CANCELLED)


# Stored transitions only. ISSUED → EXPIRED is derived at read time and never written.
ALLOWED_TRANSITIONS: Mapping[GrantStatus, frozenset[GrantStatus]] = MappingProxyType(
    {
        GrantStatus.PENDING: frozenset(
            {GrantStatus.ISSUED, GrantStatus.ERROR, GrantStatus.CANCELLED}
        ),
        GrantStatus.ISSUED: frozenset({GrantStatus.ERROR, GrantStatus.CANCELLED}),
        GrantStatus.ERROR: frozenset(),
        GrantStatus.EXPIRED: frozenset(),
        GrantStatus.CANCELLED: frozenset(),
    }
)


@unique
class AuditAction(StrEnum):
    INITIATED = "INITIATED"
    AUTHENTICATE = "AUTHENTICATE"
    NAVIGATE = "NAVIGATE"
    SUBMIT = "SUBMIT"
    PROOF_RETRIEVED = "PROOF_RETRIEVED"
    STATUS_CHANGE = "STATUS_CHANGE"
    COMPLETED = "COMPLETED"
    CANCEL = "CANCEL"
    CANCEL_REJECTED = "CANCEL_REJECTED"
    QUERY_DEBTS = "QUERY_DEBTS"
    ISSUE_GUIDE = "ISSUE_GUIDE"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class DigitalCertificate:
    """
    A client's A1 certificate (PKCS#12) used to prove identity to government systems.

    `encoded_payload` is the base64 text of the .pfx file. `password` opens it and
    must never be logged or stored in an audit event.
    """

    id: UUID
    owner_client_id: str
    certificate_type: CertificateType
    encoded_payload: str = field(repr=False)
    password: str = field(repr=False)
    expires_at: datetime | None = None
    name: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True, slots=True)
class DelegationGrant:
    """
    A procuration: a time-bounded authorization for a named attorney to act on
    behalf of a client, scoped to a fixed set of services.
    """

    client_id: str
    attorney_tax_id: str
    attorney_name: str
    valid_until: datetime
    authorized_services: frozenset[str]
    certificate_id: UUID
    id: UUID = field(default_factory=uuid4)
    issued_at: datetime | None = None
    status: GrantStatus = GrantStatus.PENDING
    grant_reference: str | None = None
    proof_document_ref: str | None = None
    failure_reason: str | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "authorized_services", frozenset(self.authorized_services))

    def effective_status(self, now: datetime) -> GrantStatus:
        """Status as seen by readers: an ISSUED grant past `valid_until` is EXPIRED."""
        if self.status is GrantStatus.ISSUED and self.valid_until <= now:
            return GrantStatus.EXPIRED
        return self.status

    def is_usable(self, now: datetime) -> bool:
        return self.effective_status(now) is GrantStatus.ISSUED

    def authorizes(self, required: frozenset[str]) -> bool:
        return required <= self.authorized_services

    def evolve(
        self,
        *,
        status: GrantStatus | None = None,
        grant_reference: str | None = None,
        proof_document_ref: str | None = None,
        failure_reason: str | None = None,
        updated_at: datetime | None = None,
    ) -> DelegationGrant:
        """Return a copy with lifecycle fields changed; scope and validity stay fixed."""
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if grant_reference is not None:
            changes["grant_reference"] = grant_reference
        if proof_document_ref is not None:
            changes["proof_document_ref"] = proof_document_ref
        if failure_reason is not None:
            changes["failure_reason"] = failure_reason
        if updated_at is not None:
            changes["updated_at"] = updated_at
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """
    One immutable entry of a grant's audit log.

    `sequence` is 0 until the AuditTrail assigns the event its position.
    """

    occurred_at: datetime
    action: str
    outcome: str
    details: Mapping[str, Any] = field(default_factory=dict)
    sequence: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def at_sequence(self, sequence: int) -> AuditEvent:
        return AuditEvent(
            occurred_at=self.occurred_at,
            action=self.action,
            outcome=self.outcome,
            details=dict(self.details),
            sequence=sequence,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "occurred_at": self.occurred_at.isoformat(),
            "action": self.action,
            "outcome": self.outcome,
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class JurisdictionConfig:
    """Endpoint configuration and permission requirements of one state tax authority."""

    code: str
    base_url: str
    auth_path: str
    query_path: str
    guide_issuance_path: str
    requires_certificate: bool = True
    requires_api_key: bool = False
    required_permissions: frozenset[str] = frozenset(
        {Permission.QUERY_DEBTS, Permission.QUERY_INVOICES}
    )

    @property
    def auth_url(self) -> str:
        return f"{self.base_url}{self.auth_path}"

    @property
    def query_url(self) -> str:
        return f"{self.base_url}{self.query_path}"

    @property
    def guide_issuance_url(self) -> str:
        return f"{self.base_url}{self.guide_issuance_path}"


@dataclass(frozen=True, slots=True)
class SessionToken:
    """Short-lived bearer token for one jurisdiction. Never persisted."""

    jurisdiction_code: str
    token: str = field(repr=False)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True, slots=True)
class AuthPayload:
    """Body sent to a jurisdiction's authentication endpoint."""

    certificate_payload: str = field(repr=False)
    certificate_password: str = field(repr=False)
    grant_reference: str
    attorney_tax_id: str
    api_key: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class RemoteToken:
    """Raw token returned by a remote auth endpoint before the broker applies its policy."""

    token: str = field(repr=False)
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PortalSession:
    """Authenticated session against the federal procuration portal."""

    token: str = field(repr=False)
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class DebtEntry:
    competence: str
    amount: Decimal
    due_date: date | None
    status: str
    document_number: str | None = None
    tax_type: str | None = None
    revenue_code: str | None = None


@dataclass(frozen=True, slots=True)
class DebtQueryResult:
    jurisdiction_code: str
    tax_id: str
    debts: tuple[DebtEntry, ...]
    queried_at: datetime

    @property
    def total_found(self) -> int:
        return len(self.debts)

    @property
    def total_amount(self) -> Decimal:
        return sum((d.amount for d in self.debts), Decimal("0"))


@dataclass(frozen=True, slots=True)
class GuideRequest:
    """Payment guide (DAR/GNRE) the caller wants issued."""

    tax_id: str
    competence: str
    amount: Decimal
    tax_type: str
    revenue_code: str | None = None
    due_date: date | None = None


@dataclass(frozen=True, slots=True)
class IssuedGuide:
    jurisdiction_code: str
    guide_number: str
    barcode: str | None
    digitable_line: str | None
    due_date: date | None
    document_url: str | None
    amount: Decimal | None


@dataclass(frozen=True, slots=True)
class IssueGrantRequest:
    client_id: str
    certificate_id: UUID
    attorney_tax_id: str
    attorney_name: str
    authorized_services: frozenset[str]
    validity_days: int


@dataclass(frozen=True, slots=True)
class IssuanceOutcome:
    """
    Final state of an `issue()` call.

    `failure` is set when the remote sequence stopped early; the grant is then in
    ERROR and `audit_log` shows exactly how far processing got.
    """

    grant: DelegationGrant
    audit_log: tuple[AuditEvent, ...]
    failure: Any = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


@dataclass(frozen=True, slots=True)
class GrantView:
    grant: DelegationGrant
    audit_log: tuple[AuditEvent, ...]


@unique
class Validity(Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True, slots=True)
class GrantValidity:
    grant_id: UUID
    validity: Validity
    status: GrantStatus
    message: str


@dataclass(frozen=True, slots=True)
class Availability:
    """Whether a client can reach a jurisdiction through a delegation right now."""

    client_id: str
    jurisdiction_code: str
    available: bool
    message: str
    grant_id: UUID | None = None


@dataclass(frozen=True, slots=True)
class FallbackJob:
    """Best-effort legacy collection requested when no usable delegation exists."""

    client_id: str
    jurisdiction_code: str
    operation: str
    reason_code: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))


@dataclass(frozen=True, slots=True)
class Authenticated:
    """Outcome obtained through a real, delegated, authenticated remote call."""

    data: DebtQueryResult | IssuedGuide
    grant_id: UUID
    warnings: tuple[str, ...] = ()
    simulated: Literal[False] = False


@dataclass(frozen=True, slots=True)
class Simulated:
    """
    Degraded outcome returned when no usable delegation exists.

    Never an authenticated result: it carries no remote data, only the reason
    and the id of the legacy collection job that was requested.
    """

    operation: str
    jurisdiction_code: str
    reason_code: str
    warning: str
    job_id: str | None = None
    simulated: Literal[True] = True


GatewayOutcome: TypeAlias = Authenticated | Simulated
