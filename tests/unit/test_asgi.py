"""
Unit tests for the FastAPI ASGI application — REST endpoints.

Uses FastAPI's TestClient without running the lifespan; the module-level
services are injected with in-memory stores and mocked remote systems.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from railway import ErrorCode
from railway.result import Result

from delegation_gateway import asgi
from delegation_gateway.adapters.memory import (
    InMemoryCredentialStore,
    InMemoryDelegationRepository,
    InMemoryResultStore,
)
from delegation_gateway.adapters.proof_store import FilesystemProofStore
from delegation_gateway.audit import AuditTrail
from delegation_gateway.auth_broker import AuthenticationBroker
from delegation_gateway.domain.models import (
    DigitalCertificate,
    GrantStatus,
    Permission,
    PortalSession,
    RemoteToken,
)
from delegation_gateway.gateway import TaxGateway
from delegation_gateway.jurisdictions import JurisdictionRegistry
from delegation_gateway.lifecycle import DelegationLifecycleManager
from delegation_gateway.main import Services
from delegation_gateway.selector import GrantSelector
from tests.conftest import CLIENT_ID, FrozenClock, make_grant

GUIDE_SERVICES = frozenset({Permission.QUERY_DEBTS, Permission.QUERY_INVOICES, Permission.ISSUE_GUIDES})


@pytest.fixture(autouse=True)
def _reset_asgi_state() -> None:
    """Reset ASGI module-level state before each test."""
    asgi._services = None
    asgi._error_message = None


@pytest.fixture()
def client() -> TestClient:
    """Create a TestClient without running the lifespan (no real startup)."""
    return TestClient(asgi.app, raise_server_exceptions=False)


@pytest.fixture()
def portal() -> MagicMock:
    portal = MagicMock()
    portal.authenticate.return_value = Result.success(PortalSession(token="p"))
    portal.open_procuration_form.return_value = Result.success("FORM-1")
    portal.submit_procuration.return_value = Result.success("PROC-2026-42")
    portal.retrieve_proof.return_value = Result.success(b"%PDF")
    return portal


@pytest.fixture()
def remote() -> MagicMock:
    remote = MagicMock()
    remote.authenticate.return_value = Result.success(RemoteToken(token="t"))
    remote.query_debts.return_value = Result.success(
        {"debitos": [{"competencia": "01/2026", "valor": "R$ 10,00", "vencimento": "2026-02-10"}]}
    )
    remote.issue_guide.return_value = Result.success({"numero_guia": "G-1", "valor": "150,00"})
    return remote


@pytest.fixture()
def services(
    repository: InMemoryDelegationRepository,
    credentials: InMemoryCredentialStore,
    audit: AuditTrail,
    results: InMemoryResultStore,
    clock: FrozenClock,
    portal: MagicMock,
    remote: MagicMock,
    tmp_path: Path,
) -> Services:
    registry = JurisdictionRegistry.default()
    selector = GrantSelector(repository, registry, clock=clock)
    fallback = MagicMock()
    fallback.enqueue.return_value = Result.success("job-1")
    scheduler = MagicMock()
    scheduler.running = True
    services = Services(
        lifecycle=DelegationLifecycleManager(
            repository, credentials, audit, portal, FilesystemProofStore(tmp_path), clock=clock
        ),
        selector=selector,
        gateway=TaxGateway(
            registry=registry,
            selector=selector,
            broker=AuthenticationBroker(registry, remote, clock=clock),
            credentials=credentials,
            client=remote,
            audit=audit,
            results=results,
            fallback=fallback,
            clock=clock,
        ),
        registry=registry,
        scheduler=scheduler,
    )
    asgi._services = services
    return services


def _issue_body(certificate: DigitalCertificate, **overrides) -> dict:
    body = {
        "client_id": CLIENT_ID,
        "certificate_id": str(certificate.id),
        "attorney_tax_id": "123.456.789-01",
        "attorney_name": "Maria Contadora",
        "authorized_services": ["QUERY_DEBTS", "QUERY_INVOICES"],
        "validity_days": 365,
    }
    body.update(overrides)
    return body


# ─────────────────────── /health ───────────────────────


class TestHealth:
    def test_returns_503_before_startup(self, client: TestClient) -> None:
        """
        GIVEN the application has not completed startup
        WHEN GET /health is called
        THEN it returns 503.
        """
        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_returns_503_on_startup_error(self, client: TestClient, services: Services) -> None:
        asgi._error_message = "Configuration error: portal missing"

        response = client.get("/health")

        assert response.status_code == 503
        assert "portal missing" in response.json()["error"]

    def test_returns_200_when_wired(self, client: TestClient, services: Services) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["scheduler_running"] is True

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("get", f"/grants/{uuid4()}"),
            ("get", "/clients/c/grants"),
            ("get", "/clients/c/jurisdictions/SP/availability"),
        ],
    )
    def test_endpoints_return_503_before_startup(self, client: TestClient, method: str, path: str) -> None:
        response = getattr(client, method)(path)

        assert response.status_code == 503
        assert response.json()["status"] == "unavailable"


# ─────────────────────── grants ───────────────────────


class TestGrantEndpoints:
    def test_issue_grant(
        self, client: TestClient, services: Services, certificate: DigitalCertificate
    ) -> None:
        """
        GIVEN a valid issuance body
        WHEN POST /grants is called
        THEN 201 is returned with the issued grant, masked attorney and audit log.
        """
        response = client.post("/grants", json=_issue_body(certificate))

        assert response.status_code == 201
        body = response.json()
        assert body["grant"]["status"] == "issued"
        assert body["grant"]["attorney_tax_id"] == "123***"
        assert body["grant"]["grant_reference"] == "PROC-2026-42"
        assert body["error"] is None
        assert body["audit_log"][-1]["action"] == "COMPLETED"

    def test_invalid_request_is_400(
        self, client: TestClient, services: Services, certificate: DigitalCertificate
    ) -> None:
        response = client.post("/grants", json=_issue_body(certificate, validity_days=0))

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_remote_failure_returns_grant_and_error(
        self,
        client: TestClient,
        services: Services,
        certificate: DigitalCertificate,
        portal: MagicMock,
    ) -> None:
        """
        GIVEN the portal fails during submission
        WHEN POST /grants is called
        THEN the status reflects the failure and the body still shows the grant in error.
        """
        portal.submit_procuration.return_value = Result.failure(
            ErrorCode.UPSTREAM_OPERATION_ERROR, "portal answered HTTP 500"
        )

        response = client.post("/grants", json=_issue_body(certificate))

        assert response.status_code == 502
        body = response.json()
        assert body["grant"]["status"] == "error"
        assert body["error"]["error_code"] == "UPSTREAM_OPERATION_ERROR"

    def test_get_grant(
        self, client: TestClient, services: Services, repository: InMemoryDelegationRepository
    ) -> None:
        grant = make_grant()
        repository.save(grant)

        response = client.get(f"/grants/{grant.id}")

        assert response.status_code == 200
        assert response.json()["grant"]["id"] == str(grant.id)
        assert response.json()["audit_log"] == []

    def test_get_unknown_grant(self, client: TestClient, services: Services) -> None:
        response = client.get(f"/grants/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_validity(
        self, client: TestClient, services: Services, repository: InMemoryDelegationRepository
    ) -> None:
        grant = make_grant()
        repository.save(grant)

        response = client.get(f"/grants/{grant.id}/validity")

        assert response.status_code == 200
        assert response.json()["validity"] == "valid"

    def test_cancel_then_cancel_again(
        self, client: TestClient, services: Services, repository: InMemoryDelegationRepository
    ) -> None:
        grant = make_grant()
        repository.save(grant)

        first = client.post(f"/grants/{grant.id}/cancel", json={"reason": "client request"})
        second = client.post(f"/grants/{grant.id}/cancel", json={})

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409
        assert second.json()["error_code"] == "INVALID_TRANSITION"

    def test_list_client_grants(
        self, client: TestClient, services: Services, repository: InMemoryDelegationRepository
    ) -> None:
        repository.save(make_grant())
        repository.save(make_grant(status=GrantStatus.CANCELLED))

        response = client.get(f"/clients/{CLIENT_ID}/grants")

        assert response.status_code == 200
        assert len(response.json()) == 2


# ─────────────────────── jurisdictions ───────────────────────


class TestJurisdictionEndpoints:
    def test_availability_without_grant(self, client: TestClient, services: Services) -> None:
        response = client.get(f"/clients/{CLIENT_ID}/jurisdictions/sp/availability")

        assert response.status_code == 200
        body = response.json()
        assert body["available"] is False
        assert body["jurisdiction_code"] == "SP"

    def test_simulated_debts(self, client: TestClient, services: Services) -> None:
        """
        GIVEN a client without a grant
        WHEN debts are requested
        THEN 200 is returned with a simulated outcome and no data.
        """
        response = client.post(
            f"/clients/{CLIENT_ID}/jurisdictions/SP/debts", json={"tax_id": "12345678000190"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["simulated"] is True
        assert body["reason_code"] == "NO_VALID_DELEGATION"
        assert body["job_id"] == "job-1"
        assert "data" not in body

    def test_authenticated_debts(
        self,
        client: TestClient,
        services: Services,
        repository: InMemoryDelegationRepository,
        certificate: DigitalCertificate,
    ) -> None:
        repository.save(make_grant(certificate_id=certificate.id, services=GUIDE_SERVICES))

        response = client.post(
            f"/clients/{CLIENT_ID}/jurisdictions/SP/debts", json={"tax_id": "12345678000190"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["simulated"] is False
        assert body["data"]["total_found"] == 1
        assert body["data"]["total_amount"] == "10.00"
        assert body["data"]["tax_id"] == "123***"

    def test_guide(
        self,
        client: TestClient,
        services: Services,
        repository: InMemoryDelegationRepository,
        certificate: DigitalCertificate,
    ) -> None:
        repository.save(make_grant(certificate_id=certificate.id, services=GUIDE_SERVICES))

        response = client.post(
            f"/clients/{CLIENT_ID}/jurisdictions/SP/guides",
            json={"tax_id": "12345678000190", "competence": "01/2026", "amount": "150.00", "tax_type": "ICMS"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["guide_number"] == "G-1"

    def test_unknown_jurisdiction(self, client: TestClient, services: Services) -> None:
        response = client.post(f"/clients/{CLIENT_ID}/jurisdictions/XX/debts", json={"tax_id": "12345678000190"})

        assert response.status_code == 500
        assert response.json()["error_code"] == "CONFIGURATION_ERROR"

    def test_bad_tax_id(self, client: TestClient, services: Services) -> None:
        response = client.post(f"/clients/{CLIENT_ID}/jurisdictions/SP/debts", json={"tax_id": "1"})

        assert response.status_code == 400
