"""
DelegationLifecycleManager — creation, issuance and cancellation of grants.

Issuance is a railway through the procuration portal; every step that
succeeds leaves one audit event behind, so the log shows exactly how far
processing got:

  validate request                                  → VALIDATION_ERROR (no grant)
    → save PENDING grant                            → INITIATED
      → resolve certificate (must be the client's)
        → portal.authenticate                       → AUTHENTICATE
          → portal.open_procuration_form            → NAVIGATE
            → portal.submit_procuration → ISSUED    → SUBMIT, STATUS_CHANGE
              → portal.retrieve_proof → proof store → PROOF_RETRIEVED
                                                    → COMPLETED

Any failing step appends ERROR, moves the grant to ERROR (with
`failure_reason`) and still returns Success(IssuanceOutcome) carrying the
failure; events appended before the failure stay. Status changes go through
`update_status`, which enforces ALLOWED_TRANSITIONS and always appends a
STATUS_CHANGE event. EXPIRED is never written: readers derive it.

Every write after creation is conditional on the status it was derived
from, so a grant cancelled while issuance is in flight stays CANCELLED and
the issuance ends with INVALID_TRANSITION.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID

import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result

from delegation_gateway.audit import AuditTrail
from delegation_gateway.domain.masking import only_digits
from delegation_gateway.domain.models import (
    ALLOWED_TRANSITIONS,
    KNOWN_PERMISSIONS,
    AuditAction,
    DelegationGrant,
    DigitalCertificate,
    GrantStatus,
    GrantValidity,
    GrantView,
    IssuanceOutcome,
    IssueGrantRequest,
    PortalSession,
    Validity,
)
from delegation_gateway.domain.ports import (
    CredentialStore,
    DelegationRepository,
    ProcurationPortal,
    ProofDocumentStore,
)

log = structlog.get_logger()

T = TypeVar("T")

ATTORNEY_TAX_ID_LENGTH = 11


def _utc_now() -> datetime:
    return datetime.now(UTC)


def validate_issue_request(request: IssueGrantRequest) -> Result[IssueGrantRequest]:
    """
    Check and normalize an issuance request before anything is stored.

    The attorney tax id is reduced to its digits and must be a CPF (11 digits);
    the name is stripped; services must be known permissions. All problems are
    reported at once in `details["errors"]`.
    """
    errors: list[str] = []
    tax_id = only_digits(request.attorney_tax_id or "")
    name = (request.attorney_name or "").strip()
    services = frozenset(request.authorized_services or ())

    if not (request.client_id or "").strip():
        errors.append("client_id is required")
    if len(tax_id) != ATTORNEY_TAX_ID_LENGTH:
        errors.append(f"attorney_tax_id must have {ATTORNEY_TAX_ID_LENGTH} digits")
    if not name:
        errors.append("attorney_name is required")
    if not services:
        errors.append("authorized_services must not be empty")
    unknown = sorted(services - KNOWN_PERMISSIONS)
    if unknown:
        errors.append(f"unknown services: {', '.join(unknown)}")
    if request.validity_days <= 0:
        errors.append("validity_days must be positive")

    if errors:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            "; ".join(errors),
            details={"errors": errors},
        )
    return Result.success(
        IssueGrantRequest(
            client_id=request.client_id.strip(),
            certificate_id=request.certificate_id,
            attorney_tax_id=tax_id,
            attorney_name=name,
            authorized_services=services,
            validity_days=request.validity_days,
        )
    )


class DelegationLifecycleManager:
    def __init__(
        self,
        repository: DelegationRepository,
        credentials: CredentialStore,
        audit: AuditTrail,
        portal: ProcurationPortal,
        proof_store: ProofDocumentStore,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._credentials = credentials
        self._audit = audit
        self._portal = portal
        self._proof_store = proof_store
        self._clock = clock

    # ──────────────────────── issuance ────────────────────────

    def issue(self, request: IssueGrantRequest) -> Result[IssuanceOutcome]:
        """
        Create a grant and register it at the procuration portal.

        Fails only when the request is invalid or the grant cannot be stored;
        once the grant exists the result is Success(IssuanceOutcome) and
        `outcome.failure` tells whether the remote sequence completed.
        """
        return (
            validate_issue_request(request)
            .flat_map(self._create_pending)
            .flat_map(self._run_issuance)
        )

    def _create_pending(self, request: IssueGrantRequest) -> Result[DelegationGrant]:
        now = self._clock()
        grant = DelegationGrant(
            client_id=request.client_id,
            attorney_tax_id=request.attorney_tax_id,
            attorney_name=request.attorney_name,
            valid_until=now + timedelta(days=request.validity_days),
            authorized_services=request.authorized_services,
            certificate_id=request.certificate_id,
            issued_at=now,
            updated_at=now,
        )
        return self._repository.save(grant).peek(
            lambda saved: self._record(
                saved.id,
                AuditAction.INITIATED,
                GrantStatus.PENDING.value,
                {
                    "client_id": saved.client_id,
                    "attorney_tax_id": saved.attorney_tax_id,
                    "authorized_services": sorted(saved.authorized_services),
                    "valid_until": saved.valid_until.isoformat(),
                },
            )
        )

    def _run_issuance(self, grant: DelegationGrant) -> Result[IssuanceOutcome]:
        log.info("lifecycle.issuance_started", grant_id=str(grant.id), client_id=grant.client_id)
        sequence = (
            self._resolve_certificate(grant)
            .flat_map(lambda certificate: self._authenticate(grant, certificate))
            .flat_map(lambda session: self._navigate(grant, session))
            .flat_map(lambda session: self._submit(grant, session))
            .flat_map(lambda issued_and_session: self._store_proof(*issued_and_session))
            .peek(self._complete)
        )
        if sequence.is_failure():
            return self._fail(grant.id, sequence.error())
        return self._outcome(grant.id, None)

    def _resolve_certificate(self, grant: DelegationGrant) -> Result[DigitalCertificate]:
        return (
            self._credentials.find_certificate(grant.certificate_id)
            .ensure(
                lambda certificate: certificate.owner_client_id == grant.client_id,
                ErrorCode.VALIDATION_ERROR,
                f"Certificate {grant.certificate_id} does not belong to client {grant.client_id}",
            )
            .map_failure(lambda err: err.with_details(step="CERTIFICATE"))
        )

    def _authenticate(
        self, grant: DelegationGrant, certificate: DigitalCertificate
    ) -> Result[PortalSession]:
        return self._step(
            grant.id,
            AuditAction.AUTHENTICATE,
            lambda: self._portal.authenticate(certificate, grant.client_id),
            lambda _: {"certificate_id": str(certificate.id)},
        )

    def _navigate(self, grant: DelegationGrant, session: PortalSession) -> Result[PortalSession]:
        return self._step(
            grant.id,
            AuditAction.NAVIGATE,
            lambda: self._portal.open_procuration_form(session),
            lambda form: {"form": form},
        ).map(lambda _: session)

    def _submit(
        self, grant: DelegationGrant, session: PortalSession
    ) -> Result[tuple[DelegationGrant, PortalSession]]:
        return (
            self._step(
                grant.id,
                AuditAction.SUBMIT,
                lambda: self._portal.submit_procuration(session, grant),
                lambda reference: {
                    "grant_reference": reference,
                    "attorney_tax_id": grant.attorney_tax_id,
                    "authorized_services": sorted(grant.authorized_services),
                },
            )
            .flat_map(
                lambda reference: self.update_status(
                    grant.id,
                    GrantStatus.ISSUED,
                    "procuration registered at the portal",
                    grant_reference=reference,
                )
            )
            .map(lambda issued: (issued, session))
        )

    def _store_proof(
        self, issued: DelegationGrant, session: PortalSession
    ) -> Result[DelegationGrant]:
        def _attach(reference: str) -> Result[DelegationGrant]:
            return (
                self._repository.find_by_id(issued.id)
                .ensure(
                    lambda current: current.status is GrantStatus.ISSUED,
                    ErrorCode.INVALID_TRANSITION,
                    f"Grant {issued.id} left {GrantStatus.ISSUED.value} before its proof was stored",
                )
                .flat_map(
                    lambda current: self._repository.save(
                        current.evolve(proof_document_ref=reference, updated_at=self._clock()),
                        expected_status=GrantStatus.ISSUED,
                    )
                )
            )

        def _keep(document: bytes) -> Result[DelegationGrant]:
            return (
                self._proof_store.store(issued.client_id, issued.id, document)
                .flat_map(_attach)
                .peek(
                    lambda saved: self._record(
                        saved.id,
                        AuditAction.PROOF_RETRIEVED,
                        "success",
                        {"proof_document_ref": saved.proof_document_ref, "size_bytes": len(document)},
                    )
                )
            )

        assert issued.grant_reference is not None  # set by _submit
        return (
            self._portal.retrieve_proof(session, issued.grant_reference)
            .flat_map(_keep)
            .map_failure(lambda err: err.with_details(step=str(AuditAction.PROOF_RETRIEVED)))
        )

    def _complete(self, grant: DelegationGrant) -> None:
        self._record(
            grant.id,
            AuditAction.COMPLETED,
            "success",
            {"grant_reference": grant.grant_reference},
        )
        log.info(
            "lifecycle.grant_issued",
            grant_id=str(grant.id),
            grant_reference=grant.grant_reference,
            valid_until=grant.valid_until.isoformat(),
        )

    def _fail(self, grant_id: UUID, err: FailureDescription) -> Result[IssuanceOutcome]:
        log.warning(
            "lifecycle.issuance_failed",
            grant_id=str(grant_id),
            step=err.details.get("step"),
            code=err.code.value,
            error=err.message,
        )
        self._record(
            grant_id,
            AuditAction.ERROR,
            "failure",
            {"step": err.details.get("step"), "code": err.code.value, "message": err.message},
        )
        self.update_status(
            grant_id, GrantStatus.ERROR, err.message, failure_reason=err.message
        ).peek_failure(
            lambda transition_err: log.error(
                "lifecycle.error_transition_failed",
                grant_id=str(grant_id),
                error=transition_err.message,
            )
        )
        return self._outcome(grant_id, err)

    def _outcome(self, grant_id: UUID, failure: FailureDescription | None) -> Result[IssuanceOutcome]:
        return self.get_grant(grant_id).map(
            lambda view: IssuanceOutcome(grant=view.grant, audit_log=view.audit_log, failure=failure)
        )

    # ──────────────────────── state machine ────────────────────────

    def update_status(
        self,
        grant_id: UUID,
        new_status: GrantStatus,
        reason: str,
        **changes: Any,
    ) -> Result[DelegationGrant]:
        """
        Move a grant to `new_status` if ALLOWED_TRANSITIONS permits it.

        `changes` may set the other lifecycle fields (`grant_reference`,
        `proof_document_ref`, `failure_reason`). A STATUS_CHANGE event is
        appended for every transition that is stored.
        """

        def _apply(current: DelegationGrant) -> Result[DelegationGrant]:
            if new_status not in ALLOWED_TRANSITIONS[current.status]:
                return Result.failure(
                    ErrorCode.INVALID_TRANSITION,
                    f"Grant {grant_id} cannot move from {current.status.value} to {new_status.value}",
                    details={"from": current.status.value, "to": new_status.value},
                )
            updated = current.evolve(status=new_status, updated_at=self._clock(), **changes)
            return self._repository.save(updated, expected_status=current.status).peek(
                lambda saved: self._record(
                    saved.id,
                    AuditAction.STATUS_CHANGE,
                    new_status.value,
                    {"from": current.status.value, "to": new_status.value, "reason": reason},
                )
            )

        return self._repository.find_by_id(grant_id).flat_map(_apply)

    def cancel(self, grant_id: UUID, reason: str) -> Result[DelegationGrant]:
        """
        Cancel a PENDING or effectively ISSUED grant.

        Any other status is left untouched: one CANCEL_REJECTED event is
        appended and INVALID_TRANSITION returned.
        """

        def _cancel(grant: DelegationGrant) -> Result[DelegationGrant]:
            effective = grant.effective_status(self._clock())
            if effective not in (GrantStatus.PENDING, GrantStatus.ISSUED):
                self._record(
                    grant.id,
                    AuditAction.CANCEL_REJECTED,
                    "rejected",
                    {"status": effective.value, "reason": reason},
                )
                log.info("lifecycle.cancel_rejected", grant_id=str(grant.id), status=effective.value)
                return Result.failure(
                    ErrorCode.INVALID_TRANSITION,
                    f"Grant {grant.id} is {effective.value} and cannot be cancelled",
                    details={"from": effective.value, "to": GrantStatus.CANCELLED.value},
                )
            return self.update_status(grant.id, GrantStatus.CANCELLED, reason).peek(_cancelled)

        def _cancelled(cancelled: DelegationGrant) -> None:
            self._record(cancelled.id, AuditAction.CANCEL, "success", {"reason": reason})
            log.info("lifecycle.grant_cancelled", grant_id=str(cancelled.id))

        return self._repository.find_by_id(grant_id).flat_map(_cancel)

    # ──────────────────────── queries ────────────────────────

    def get_grant(self, grant_id: UUID) -> Result[GrantView]:
        return Result.combine(
            self._repository.find_by_id(grant_id),
            self._audit.read(grant_id),
            lambda grant, events: GrantView(grant=grant, audit_log=tuple(events)),
        )

    def list_grants(self, client_id: str) -> Result[list[DelegationGrant]]:
        """All grants of a client, newest first, whatever their status."""
        return self._repository.find_by_client(client_id)

    def validate_grant(self, grant_id: UUID) -> Result[GrantValidity]:
        """Report whether a grant can be used right now. Nothing is written."""

        def _assess(grant: DelegationGrant) -> GrantValidity:
            status = grant.effective_status(self._clock())
            match status:
                case GrantStatus.ISSUED:
                    validity = Validity.VALID
                    message = f"Procuration valid until {grant.valid_until.date().isoformat()}"
                case GrantStatus.EXPIRED:
                    validity = Validity.EXPIRED
                    message = f"Procuration expired on {grant.valid_until.date().isoformat()}"
                case _:
                    validity = Validity.INVALID
                    message = f"Procuration is {status.value}"
            return GrantValidity(grant_id=grant.id, validity=validity, status=status, message=message)

        return self._repository.find_by_id(grant_id).map(_assess)

    # ──────────────────────── helpers ────────────────────────

    def _step(
        self,
        grant_id: UUID,
        action: AuditAction,
        call: Callable[[], Result[T]],
        details: Callable[[T], Mapping[str, Any]],
    ) -> Result[T]:
        return (
            call()
            .map_failure(lambda err: err.with_details(step=str(action)))
            .peek(lambda value: self._record(grant_id, action, "success", details(value)))
        )

    def _record(
        self,
        grant_id: UUID,
        action: AuditAction,
        outcome: str,
        details: Mapping[str, Any],
    ) -> None:
        """Append an audit event; a storage failure is logged, never raised."""
        self._audit.record(grant_id, action, outcome, details).peek_failure(
            lambda err: log.warning(
                "lifecycle.audit_failed",
                grant_id=str(grant_id),
                action=str(action),
                error=err.message,
            )
        )
