"""
Shared test fixtures and helpers for the delegation-gateway test suite.

Provides a frozen clock, factories for grants and certificates, a real
PKCS#12 (.pfx) blob built with `cryptography`, and in-memory adapters wired
the way production wires the PostgreSQL ones.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID, uuid4

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from delegation_gateway.adapters.memory import (
    InMemoryAuditLogStore,
    InMemoryCredentialStore,
    InMemoryDelegationRepository,
    InMemoryResultStore,
)
from delegation_gateway.audit import AuditTrail
from delegation_gateway.domain.models import (
    CertificateType,
    DelegationGrant,
    DigitalCertificate,
    GrantStatus,
    Permission,
)
from delegation_gateway.jurisdictions import JurisdictionRegistry

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
CLIENT_ID = "client-001"
ATTORNEY_CPF = "12345678901"
CERT_PASSWORD = "pfx-secret"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@lru_cache(maxsize=8)
def build_pfx(password: str = CERT_PASSWORD, not_after: datetime = NOW + timedelta(days=365)) -> str:
    """Base64 of a self-signed PKCS#12 bundle protected by `password`."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "EMPRESA TESTE LTDA:12345678000190")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=730))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    blob = pkcs12.serialize_key_and_certificates(
        b"a1", key, cert, None, BestAvailableEncryption(password.encode())
    )
    return base64.b64encode(blob).decode("ascii")


def make_certificate(**overrides: Any) -> DigitalCertificate:
    values: dict[str, Any] = {
        "id": uuid4(),
        "owner_client_id": CLIENT_ID,
        "certificate_type": CertificateType.CORPORATE_ENTITY,
        "encoded_payload": build_pfx(),
        "password": CERT_PASSWORD,
        "expires_at": NOW + timedelta(days=365),
        "name": "e-CNPJ A1",
    }
    values.update(overrides)
    return DigitalCertificate(**values)


def make_grant(
    certificate_id: UUID | None = None,
    services: frozenset[str] = frozenset({Permission.QUERY_DEBTS, Permission.QUERY_INVOICES}),
    status: GrantStatus = GrantStatus.ISSUED,
    valid_until: datetime = NOW + timedelta(days=30),
    **overrides: Any,
) -> DelegationGrant:
    values: dict[str, Any] = {
        "client_id": CLIENT_ID,
        "attorney_tax_id": ATTORNEY_CPF,
        "attorney_name": "Maria Contadora",
        "valid_until": valid_until,
        "authorized_services": services,
        "certificate_id": certificate_id or uuid4(),
        "issued_at": NOW - timedelta(days=1),
        "status": status,
        "grant_reference": "PROC-2026-0001" if status is GrantStatus.ISSUED else None,
        "updated_at": NOW - timedelta(days=1),
    }
    values.update(overrides)
    return DelegationGrant(**values)


# ─────────────────────── Fixtures ───────────────────────


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def registry() -> JurisdictionRegistry:
    return JurisdictionRegistry.default()


@pytest.fixture()
def certificate() -> DigitalCertificate:
    return make_certificate()


@pytest.fixture()
def repository() -> InMemoryDelegationRepository:
    return InMemoryDelegationRepository()


@pytest.fixture()
def credentials(certificate: DigitalCertificate) -> InMemoryCredentialStore:
    return InMemoryCredentialStore([certificate])


@pytest.fixture()
def audit_store() -> InMemoryAuditLogStore:
    return InMemoryAuditLogStore()


@pytest.fixture()
def audit(audit_store: InMemoryAuditLogStore, clock: FrozenClock) -> AuditTrail:
    return AuditTrail(audit_store, backoff_seconds=0, clock=clock)


@pytest.fixture()
def results() -> InMemoryResultStore:
    return InMemoryResultStore()
