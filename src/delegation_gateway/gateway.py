"""
TaxGateway — the entry point callers use to reach a state tax authority.

Each operation is a railway run inside a LoggingExecutionContext:

  registry.lookup(uf)                      → CONFIGURATION_ERROR (fatal, no fallback)
    → validate input                       → VALIDATION_ERROR
      → selector.find_valid_grant          → NO_VALID_DELEGATION / INSUFFICIENT_SCOPE
      │                                        └─→ Success(Simulated) + fallback job
      → credentials.find_certificate
        → broker.authenticate              → AUTHENTICATION_ERROR / NETWORK_TIMEOUT
          → client.query_debts / issue_guide
            → normalize                    → UPSTREAM_OPERATION_ERROR(stage=normalization)
              → result store + audit event (failures become warnings)
                → Success(Authenticated)

Once a grant has been selected, a failure appends exactly one ERROR event
to that grant's log and never changes its status. Nothing here retries:
`details["retryable"]` tells the caller whether trying again makes sense.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, TypeVar

import structlog
from railway import ErrorCode, FailureDescription, LoggingExecutionContext
from railway.result import Result

from delegation_gateway.audit import AuditTrail
from delegation_gateway.auth_broker import AuthenticationBroker
from delegation_gateway.domain.masking import mask_tax_id, only_digits
from delegation_gateway.domain.models import (
    AuditAction,
    Authenticated,
    DelegationGrant,
    FallbackJob,
    GatewayOutcome,
    GuideRequest,
    JurisdictionConfig,
    Permission,
    SessionToken,
    Simulated,
)
from delegation_gateway.domain.ports import (
    CredentialStore,
    FallbackJobQueue,
    JurisdictionClient,
    ResultStore,
)
from delegation_gateway.jurisdictions import JurisdictionRegistry
from delegation_gateway.normalization import normalize_debts, normalize_guide
from delegation_gateway.selector import GrantSelector

log = structlog.get_logger()

T = TypeVar("T")

OPERATION_QUERY_DEBTS = "query_debts"
OPERATION_ISSUE_GUIDE = "issue_guide"

_TAX_ID_LENGTHS = (11, 14)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _validate_tax_id(tax_id: str) -> Result[str]:
    digits = only_digits(tax_id or "")
    if len(digits) not in _TAX_ID_LENGTHS:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            "tax_id must be a CPF (11 digits) or CNPJ (14 digits)",
            details={"field": "tax_id"},
        )
    return Result.success(digits)


def _validate_guide_request(request: GuideRequest) -> Result[GuideRequest]:
    def _check(digits: str) -> Result[GuideRequest]:
        if not (request.competence or "").strip():
            return Result.failure(
                ErrorCode.VALIDATION_ERROR, "competence is required", details={"field": "competence"}
            )
        if not (request.tax_type or "").strip():
            return Result.failure(
                ErrorCode.VALIDATION_ERROR, "tax_type is required", details={"field": "tax_type"}
            )
        if request.amount is None or Decimal(request.amount) <= 0:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR, "amount must be positive", details={"field": "amount"}
            )
        return Result.success(
            GuideRequest(
                tax_id=digits,
                competence=request.competence.strip(),
                amount=Decimal(request.amount),
                tax_type=request.tax_type.strip(),
                revenue_code=request.revenue_code,
                due_date=request.due_date,
            )
        )

    return _validate_tax_id(request.tax_id).flat_map(_check)


def _with_retry_hint(err: FailureDescription) -> FailureDescription:
    if "retryable" in err.details:
        return err
    return err.with_details(retryable=err.retryable)


class TaxGateway:
    def __init__(
        self,
        registry: JurisdictionRegistry,
        selector: GrantSelector,
        broker: AuthenticationBroker,
        credentials: CredentialStore,
        client: JurisdictionClient,
        audit: AuditTrail,
        results: ResultStore,
        fallback: FallbackJobQueue | None = None,
        fallback_enabled: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._registry = registry
        self._selector = selector
        self._broker = broker
        self._credentials = credentials
        self._client = client
        self._audit = audit
        self._results = results
        self._fallback = fallback
        self._fallback_enabled = fallback_enabled
        self._clock = clock

    # ──────────────────────── operations ────────────────────────

    def query_debts(
        self, client_id: str, jurisdiction_code: str, tax_id: str
    ) -> Result[GatewayOutcome]:
        """Pending debts of `tax_id` at `jurisdiction_code`, acting for `client_id`."""
        code = jurisdiction_code.upper()

        def _run(config: JurisdictionConfig, digits: str) -> Result[GatewayOutcome]:
            return self._delegated(
                client_id=client_id,
                config=config,
                operation=OPERATION_QUERY_DEBTS,
                required=config.required_permissions,
                parameters={"tax_id": digits},
                remote=lambda session: self._client.query_debts(config, session, digits).flat_map(
                    lambda payload: normalize_debts(code, digits, payload, self._clock())
                ),
                persist=lambda result: self._results.save_debts(client_id, result),
                action=AuditAction.QUERY_DEBTS,
                audit_details=lambda result: {
                    "tax_id": digits,
                    "total_found": result.total_found,
                    "total_amount": str(result.total_amount),
                },
            )

        ctx = LoggingExecutionContext(operation=f"QueryDebts[{code}]")
        return ctx.execute(
            lambda: self._registry.lookup(code).flat_map(
                lambda config: _validate_tax_id(tax_id).flat_map(lambda digits: _run(config, digits))
            )
        )

    def issue_guide(
        self, client_id: str, jurisdiction_code: str, request: GuideRequest
    ) -> Result[GatewayOutcome]:
        """
        Issue a payment guide at `jurisdiction_code`.

        The grant must authorize the jurisdiction's own permissions plus
        ISSUE_GUIDES.
        """
        code = jurisdiction_code.upper()

        def _run(config: JurisdictionConfig, valid: GuideRequest) -> Result[GatewayOutcome]:
            return self._delegated(
                client_id=client_id,
                config=config,
                operation=OPERATION_ISSUE_GUIDE,
                required=config.required_permissions | {Permission.ISSUE_GUIDES},
                parameters={
                    "tax_id": valid.tax_id,
                    "competence": valid.competence,
                    "amount": str(valid.amount),
                    "tax_type": valid.tax_type,
                },
                remote=lambda session: self._client.issue_guide(config, session, valid).flat_map(
                    lambda payload: normalize_guide(code, payload)
                ),
                persist=lambda guide: self._results.save_guide(client_id, guide),
                action=AuditAction.ISSUE_GUIDE,
                audit_details=lambda guide: {
                    "tax_id": valid.tax_id,
                    "competence": valid.competence,
                    "guide_number": guide.guide_number,
                    "amount": str(guide.amount if guide.amount is not None else valid.amount),
                },
            )

        ctx = LoggingExecutionContext(operation=f"IssueGuide[{code}]")
        return ctx.execute(
            lambda: self._registry.lookup(code).flat_map(
                lambda config: _validate_guide_request(request).flat_map(
                    lambda valid: _run(config, valid)
                )
            )
        )

    # ──────────────────────── shared railway ────────────────────────

    def _delegated(
        self,
        client_id: str,
        config: JurisdictionConfig,
        operation: str,
        required: frozenset[str],
        parameters: Mapping[str, Any],
        remote: Callable[[SessionToken], Result[T]],
        persist: Callable[[T], Result[Any]],
        action: AuditAction,
        audit_details: Callable[[T], Mapping[str, Any]],
    ) -> Result[GatewayOutcome]:
        selection = self._selector.find_valid_grant(client_id, config.code, frozenset(required))
        if selection.is_failure() and selection.error().code.is_fallback_eligible:
            return self._simulate(client_id, config.code, operation, selection.error(), parameters)

        def _call(grant: DelegationGrant) -> Result[GatewayOutcome]:
            outcome = (
                self._credentials.find_certificate(grant.certificate_id)
                .flat_map(lambda certificate: self._broker.authenticate(config.code, grant, certificate))
                .flat_map(remote)
            )
            if outcome.is_failure():
                return self._record_failure(grant, config.code, operation, outcome.error())
            return Result.success(
                self._finish(grant, config.code, outcome.value(), persist, action, audit_details)
            )

        return selection.flat_map(_call)

    def _finish(
        self,
        grant: DelegationGrant,
        code: str,
        data: T,
        persist: Callable[[T], Result[Any]],
        action: AuditAction,
        audit_details: Callable[[T], Mapping[str, Any]],
    ) -> Authenticated:
        """The remote side effect already happened: storage problems only add warnings."""
        warnings: list[str] = []

        stored = persist(data)
        if stored.is_failure():
            log.warning("gateway.result_store_failed", grant_id=str(grant.id), error=stored.error().message)
            warnings.append(f"Result could not be stored: {stored.error().message}")

        audited = self._audit.record(grant.id, action, "success", {"jurisdiction": code, **audit_details(data)})
        if audited.is_failure():
            log.warning("gateway.audit_failed", grant_id=str(grant.id), error=audited.error().message)
            warnings.append(f"Audit event could not be stored: {audited.error().message}")

        log.info("gateway.authenticated_result", jurisdiction=code, grant_id=str(grant.id), operation=str(action))
        return Authenticated(data=data, grant_id=grant.id, warnings=tuple(warnings))  # type: ignore[arg-type]

    def _record_failure(
        self,
        grant: DelegationGrant,
        code: str,
        operation: str,
        err: FailureDescription,
    ) -> Result[GatewayOutcome]:
        stage = "authentication" if err.code is ErrorCode.AUTHENTICATION_ERROR else err.details.get("stage", "operation")
        self._audit.record(
            grant.id,
            AuditAction.ERROR,
            "failure",
            {
                "jurisdiction": code,
                "operation": operation,
                "stage": stage,
                "code": err.code.value,
                "kind": err.details.get("kind"),
                "message": err.message,
            },
        ).peek_failure(
            lambda audit_err: log.warning(
                "gateway.audit_failed", grant_id=str(grant.id), error=audit_err.message
            )
        )
        log.warning(
            "gateway.delegated_call_failed",
            jurisdiction=code,
            grant_id=str(grant.id),
            operation=operation,
            code=err.code.value,
            kind=err.details.get("kind"),
        )
        return Result.failure_from(_with_retry_hint(err))

    def _simulate(
        self,
        client_id: str,
        code: str,
        operation: str,
        reason: FailureDescription,
        parameters: Mapping[str, Any],
    ) -> Result[GatewayOutcome]:
        if not self._fallback_enabled:
            return Result.failure_from(reason)

        job = FallbackJob(
            client_id=client_id,
            jurisdiction_code=code,
            operation=operation,
            reason_code=reason.code.value,
            parameters=parameters,
        )
        job_id: str | None = None
        if self._fallback is not None:
            enqueued = self._fallback.enqueue(job)
            if enqueued.is_success():
                job_id = enqueued.value()
            else:
                log.warning(
                    "gateway.fallback_enqueue_failed",
                    client_id=client_id,
                    jurisdiction=code,
                    error=enqueued.error().message,
                )

        log.warning(
            "gateway.simulated_fallback",
            client_id=client_id,
            jurisdiction=code,
            operation=operation,
            reason=reason.code.value,
            tax_id=mask_tax_id(str(parameters.get("tax_id", ""))),
            job_id=job_id,
        )
        return Result.success(
            Simulated(
                operation=operation,
                jurisdiction_code=code,
                reason_code=reason.code.value,
                warning=(
                    f"{reason.message}. Result is simulated: configure a valid procuration "
                    f"for {code} to obtain authenticated data."
                ),
                job_id=job_id,
            )
        )
