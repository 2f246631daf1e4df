"""
Unit tests for TaxGateway — authenticated calls, simulated fallback and
failure auditing.

The jurisdiction client and the fallback queue are MagicMocks; selection,
authentication, normalization and audit run for real over in-memory stores.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from railway import ErrorCode, ResultAssertions
from railway.result import Result

from delegation_gateway.adapters.memory import (
    InMemoryCredentialStore,
    InMemoryDelegationRepository,
    InMemoryResultStore,
)
from delegation_gateway.audit import AuditTrail
from delegation_gateway.auth_broker import AuthenticationBroker
from delegation_gateway.domain.models import (
    Authenticated,
    DelegationGrant,
    DigitalCertificate,
    FallbackJob,
    GrantStatus,
    GuideRequest,
    Permission,
    RemoteToken,
    Simulated,
)
from delegation_gateway.gateway import OPERATION_ISSUE_GUIDE, OPERATION_QUERY_DEBTS, TaxGateway
from delegation_gateway.jurisdictions import JurisdictionRegistry
from delegation_gateway.selector import GrantSelector
from tests.conftest import CLIENT_ID, FrozenClock, make_certificate, make_grant

CNPJ = "12.345.678/0001-90"
GUIDE_SERVICES = frozenset({Permission.QUERY_DEBTS, Permission.QUERY_INVOICES, Permission.ISSUE_GUIDES})

DEBTS_PAYLOAD = {
    "debitos": [
        {
            "competencia": "01/2026",
            "valor": "R$ 1.234,56",
            "data_vencimento": "20/02/2026",
            "situacao": "Em aberto",
        },
        {"periodo": "02/2026", "valor_total": 100, "vencimento": "2026-03-20"},
    ]
}


@pytest.fixture()
def client() -> MagicMock:
    client = MagicMock()
    client.authenticate.return_value = Result.success(RemoteToken(token="state-token"))
    client.query_debts.return_value = Result.success(DEBTS_PAYLOAD)
    client.issue_guide.return_value = Result.success(
        {"numero_guia": "G-2026-1", "codigo_barras": "8560000", "valor": "150,00"}
    )
    return client


@pytest.fixture()
def fallback() -> MagicMock:
    queue = MagicMock()
    queue.enqueue.return_value = Result.success("job-1")
    return queue


@pytest.fixture()
def grant(repository: InMemoryDelegationRepository, certificate: DigitalCertificate) -> DelegationGrant:
    grant = make_grant(certificate_id=certificate.id, services=GUIDE_SERVICES)
    repository.save(grant)
    return grant


def _gateway(
    repository,
    credentials,
    audit,
    results,
    client,
    fallback=None,
    fallback_enabled: bool = True,
) -> TaxGateway:
    registry = JurisdictionRegistry.default()
    clock = FrozenClock()
    return TaxGateway(
        registry=registry,
        selector=GrantSelector(repository, registry, clock=clock),
        broker=AuthenticationBroker(registry, client, clock=clock),
        credentials=credentials,
        client=client,
        audit=audit,
        results=results,
        fallback=fallback,
        fallback_enabled=fallback_enabled,
        clock=clock,
    )


@pytest.fixture()
def gateway(
    repository: InMemoryDelegationRepository,
    credentials: InMemoryCredentialStore,
    audit: AuditTrail,
    results: InMemoryResultStore,
    client: MagicMock,
    fallback: MagicMock,
) -> TaxGateway:
    return _gateway(repository, credentials, audit, results, client, fallback)


def _guide(**overrides) -> GuideRequest:
    values = {"tax_id": CNPJ, "competence": "01/2026", "amount": Decimal("150.00"), "tax_type": "ICMS"}
    values.update(overrides)
    return GuideRequest(**values)


# ─────────────────────── authenticated path ───────────────────────


class TestAuthenticatedDebtQuery:
    def test_returns_normalized_debts(
        self,
        gateway: TaxGateway,
        grant: DelegationGrant,
        results: InMemoryResultStore,
        client: MagicMock,
    ) -> None:
        """
        GIVEN a valid grant covering SP
        WHEN query_debts is called
        THEN an Authenticated outcome carries the normalized debts, which are
        also stored for the client.
        """
        outcome = ResultAssertions.assert_success(gateway.query_debts(CLIENT_ID, "sp", CNPJ))

        assert isinstance(outcome, Authenticated)
        assert outcome.simulated is False
        assert outcome.grant_id == grant.id
        assert outcome.warnings == ()
        assert outcome.data.jurisdiction_code == "SP"
        assert outcome.data.total_found == 2
        assert outcome.data.total_amount == Decimal("1334.56")
        assert results.debts[CLIENT_ID] == [outcome.data]

        config, session, tax_id = client.query_debts.call_args.args
        assert config.code == "SP"
        assert session.token == "state-token"
        assert tax_id == "12345678000190"

    def test_success_is_audited_with_masked_tax_id(
        self, gateway: TaxGateway, grant: DelegationGrant, audit: AuditTrail
    ) -> None:
        gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        events = audit.read(grant.id).value()
        assert [e.action for e in events] == ["QUERY_DEBTS"]
        assert events[0].details["tax_id"] == "123***"
        assert events[0].details["jurisdiction"] == "SP"
        assert events[0].details["total_found"] == 2

    def test_result_store_failure_becomes_a_warning(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        audit: AuditTrail,
        client: MagicMock,
        grant: DelegationGrant,
    ) -> None:
        results = MagicMock()
        results.save_debts.return_value = Result.failure(ErrorCode.DATABASE_ERROR, "disk full")
        gateway = _gateway(repository, credentials, audit, results, client)

        outcome = ResultAssertions.assert_success(gateway.query_debts(CLIENT_ID, "SP", CNPJ))

        assert isinstance(outcome, Authenticated)
        assert len(outcome.warnings) == 1
        assert "disk full" in outcome.warnings[0]

    def test_audit_failure_after_remote_success_becomes_a_warning(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        results: InMemoryResultStore,
        client: MagicMock,
        grant: DelegationGrant,
    ) -> None:
        """
        GIVEN an audit store that cannot be written
        WHEN a remote query succeeds
        THEN the authenticated data is still returned, with a warning.
        """
        store = MagicMock()
        store.version.return_value = Result.failure(ErrorCode.DATABASE_ERROR, "audit down")
        gateway = _gateway(
            repository, credentials, AuditTrail(store, max_attempts=1, backoff_seconds=0), results, client
        )

        outcome = gateway.query_debts(CLIENT_ID, "SP", CNPJ).value()

        assert isinstance(outcome, Authenticated)
        assert any("Audit event could not be stored" in w for w in outcome.warnings)


class TestAuthenticatedGuide:
    def test_issues_guide(
        self,
        gateway: TaxGateway,
        grant: DelegationGrant,
        results: InMemoryResultStore,
        audit: AuditTrail,
        client: MagicMock,
    ) -> None:
        outcome = ResultAssertions.assert_success(gateway.issue_guide(CLIENT_ID, "SP", _guide()))

        assert isinstance(outcome, Authenticated)
        assert outcome.data.guide_number == "G-2026-1"
        assert outcome.data.amount == Decimal("150.00")
        assert results.guides[CLIENT_ID] == [outcome.data]
        assert [e.action for e in audit.read(grant.id).value()] == ["ISSUE_GUIDE"]
        _, _, sent = client.issue_guide.call_args.args
        assert sent.tax_id == "12345678000190"

    @pytest.mark.parametrize(
        "overrides",
        [{"amount": Decimal("0")}, {"competence": " "}, {"tax_type": ""}, {"tax_id": "123"}],
    )
    def test_invalid_guide_request(self, gateway: TaxGateway, grant: DelegationGrant, overrides) -> None:
        result = gateway.issue_guide(CLIENT_ID, "SP", _guide(**overrides))
        ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)

    def test_guide_needs_issue_guides_even_where_queries_do_not(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        audit: AuditTrail,
        results: InMemoryResultStore,
        client: MagicMock,
        fallback: MagicMock,
        certificate: DigitalCertificate,
    ) -> None:
        """
        GIVEN a grant for queries only and AC (whose own requirement is queries only)
        WHEN a guide is requested
        THEN the call is simulated for insufficient scope.
        """
        repository.save(make_grant(certificate_id=certificate.id))
        gateway = _gateway(repository, credentials, audit, results, client, fallback)

        outcome = gateway.issue_guide(CLIENT_ID, "AC", _guide()).value()

        assert isinstance(outcome, Simulated)
        assert outcome.reason_code == "INSUFFICIENT_SCOPE"
        assert outcome.operation == OPERATION_ISSUE_GUIDE
        client.issue_guide.assert_not_called()


# ─────────────────────── simulated fallback ───────────────────────


class TestSimulatedFallback:
    def test_no_delegation_gives_simulated_outcome(
        self, gateway: TaxGateway, fallback: MagicMock, client: MagicMock
    ) -> None:
        """
        GIVEN a client without any grant
        WHEN query_debts is called
        THEN a Simulated outcome is returned, a fallback job is enqueued and no
        remote call is made.
        """
        outcome = ResultAssertions.assert_success(gateway.query_debts(CLIENT_ID, "SP", CNPJ))

        assert isinstance(outcome, Simulated)
        assert outcome.simulated is True
        assert outcome.reason_code == "NO_VALID_DELEGATION"
        assert outcome.operation == OPERATION_QUERY_DEBTS
        assert outcome.job_id == "job-1"
        assert "simulated" in outcome.warning.lower()
        assert "SP" in outcome.warning

        job = fallback.enqueue.call_args.args[0]
        assert isinstance(job, FallbackJob)
        assert job.client_id == CLIENT_ID
        assert job.parameters["tax_id"] == "12345678000190"
        client.authenticate.assert_not_called()
        client.query_debts.assert_not_called()

    def test_insufficient_scope_is_simulated(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        audit: AuditTrail,
        results: InMemoryResultStore,
        client: MagicMock,
        fallback: MagicMock,
        certificate: DigitalCertificate,
    ) -> None:
        grant = make_grant(certificate_id=certificate.id)
        repository.save(grant)
        gateway = _gateway(repository, credentials, audit, results, client, fallback)

        outcome = gateway.query_debts(CLIENT_ID, "SP", CNPJ).value()

        assert isinstance(outcome, Simulated)
        assert outcome.reason_code == "INSUFFICIENT_SCOPE"
        assert audit.read(grant.id).value() == []

    def test_fallback_disabled_returns_the_failure(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        audit: AuditTrail,
        results: InMemoryResultStore,
        client: MagicMock,
        fallback: MagicMock,
    ) -> None:
        gateway = _gateway(repository, credentials, audit, results, client, fallback, fallback_enabled=False)

        result = gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.NO_VALID_DELEGATION)
        fallback.enqueue.assert_not_called()

    def test_enqueue_failure_still_simulates(self, gateway: TaxGateway, fallback: MagicMock) -> None:
        fallback.enqueue.return_value = Result.failure(ErrorCode.UNKNOWN_ERROR, "scheduler stopped")

        outcome = gateway.query_debts(CLIENT_ID, "SP", CNPJ).value()

        assert isinstance(outcome, Simulated)
        assert outcome.job_id is None

    def test_without_queue(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        audit: AuditTrail,
        results: InMemoryResultStore,
        client: MagicMock,
    ) -> None:
        gateway = _gateway(repository, credentials, audit, results, client, fallback=None)
        outcome = gateway.query_debts(CLIENT_ID, "SP", CNPJ).value()
        assert isinstance(outcome, Simulated)
        assert outcome.job_id is None


# ─────────────────────── failures ───────────────────────


class TestFailures:
    def test_unknown_jurisdiction_is_never_simulated(self, gateway: TaxGateway, fallback: MagicMock) -> None:
        result = gateway.query_debts(CLIENT_ID, "XX", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.CONFIGURATION_ERROR)
        fallback.enqueue.assert_not_called()

    def test_invalid_tax_id(self, gateway: TaxGateway) -> None:
        result = gateway.query_debts(CLIENT_ID, "SP", "123")
        ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        ResultAssertions.assert_failure_detail(result, "field", "tax_id")

    def test_authentication_failure_is_audited_once(
        self,
        gateway: TaxGateway,
        grant: DelegationGrant,
        audit: AuditTrail,
        repository: InMemoryDelegationRepository,
        client: MagicMock,
    ) -> None:
        """
        GIVEN the remote refuses the credentials
        WHEN query_debts is called
        THEN AUTHENTICATION_ERROR is returned, exactly one ERROR event is
        appended to the grant's log and the grant's status does not change.
        """
        client.authenticate.return_value = Result.failure(ErrorCode.AUTHENTICATION_ERROR, "HTTP 401")

        result = gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_ERROR)
        ResultAssertions.assert_failure_detail(result, "retryable", False)
        events = audit.read(grant.id).value()
        assert [e.action for e in events] == ["ERROR"]
        assert events[0].details["stage"] == "authentication"
        assert events[0].details["kind"] == "rejected"
        assert events[0].details["operation"] == OPERATION_QUERY_DEBTS
        assert repository.find_by_id(grant.id).value().status is GrantStatus.ISSUED
        client.query_debts.assert_not_called()

    def test_unreadable_certificate_is_audited_once(
        self,
        gateway: TaxGateway,
        audit: AuditTrail,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        client: MagicMock,
    ) -> None:
        """
        GIVEN a grant whose certificate password is wrong
        WHEN query_debts is called
        THEN AUTHENTICATION_ERROR(kind=invalid_certificate) is returned, exactly
        one ERROR event is appended and the remote is never contacted.
        """
        certificate = make_certificate(password="wrong")
        credentials.add(certificate)
        grant = make_grant(certificate_id=certificate.id, services=GUIDE_SERVICES)
        repository.save(grant)

        result = gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_ERROR)
        ResultAssertions.assert_failure_detail(result, "kind", "invalid_certificate")
        events = audit.read(grant.id).value()
        assert [e.action for e in events] == ["ERROR"]
        assert events[0].details["stage"] == "authentication"
        assert events[0].details["kind"] == "invalid_certificate"
        assert repository.find_by_id(grant.id).value().status is GrantStatus.ISSUED
        client.authenticate.assert_not_called()
        client.query_debts.assert_not_called()

    def test_network_timeout_is_marked_retryable(
        self, gateway: TaxGateway, grant: DelegationGrant, audit: AuditTrail, client: MagicMock
    ) -> None:
        client.query_debts.return_value = Result.failure(
            ErrorCode.NETWORK_TIMEOUT, "timed out", details={"retryable": True}
        )

        result = gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.NETWORK_TIMEOUT)
        ResultAssertions.assert_failure_detail(result, "retryable", True)
        assert [e.action for e in audit.read(grant.id).value()] == ["ERROR"]

    def test_unusable_payload_is_an_upstream_error(
        self, gateway: TaxGateway, grant: DelegationGrant, client: MagicMock, results: InMemoryResultStore
    ) -> None:
        client.query_debts.return_value = Result.success({"mensagem": "ok"})

        result = gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.UPSTREAM_OPERATION_ERROR)
        ResultAssertions.assert_failure_detail(result, "stage", "normalization")
        assert results.debts[CLIENT_ID] == []

    def test_missing_certificate(
        self,
        repository: InMemoryDelegationRepository,
        credentials: InMemoryCredentialStore,
        audit: AuditTrail,
        results: InMemoryResultStore,
        client: MagicMock,
    ) -> None:
        grant = make_grant(certificate_id=uuid4(), services=GUIDE_SERVICES)
        repository.save(grant)
        gateway = _gateway(repository, credentials, audit, results, client)

        result = gateway.query_debts(CLIENT_ID, "SP", CNPJ)

        ResultAssertions.assert_failure(result, ErrorCode.NOT_FOUND)
        assert [e.action for e in audit.read(grant.id).value()] == ["ERROR"]

    def test_unexpected_exception_becomes_unknown_error(
        self, gateway: TaxGateway, grant: DelegationGrant, client: MagicMock
    ) -> None:
        client.query_debts.side_effect = RuntimeError("bug")
        ResultAssertions.assert_failure(gateway.query_debts(CLIENT_ID, "SP", CNPJ), ErrorCode.UNKNOWN_ERROR)
