"""
PostgreSQL adapters — grants, certificates, audit events and remote results.

Adapter layer — implements DelegationRepository, CredentialStore,
AuditLogStore and ResultStore using psycopg (v3) with parameterized queries.

Table mapping:
  DelegationGrant    → delegation_grants         (upsert by id)
  DigitalCertificate → digital_certificates
  AuditEvent         → delegation_audit_events   (PRIMARY KEY (grant_id, sequence))
  DebtQueryResult    → debt_results              (one row per debt)
  IssuedGuide        → guide_results

Audit appends are optimistic: the event is inserted with
sequence = expected_version + 1 and a concurrent writer that got there
first makes the insert hit the primary key, which is reported as
AUDIT_VERSION_CONFLICT. Rows of that table are never updated or deleted.

No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

import json
from datetime import datetime
from functools import partial
from typing import Any
from uuid import UUID, uuid4

import psycopg
import structlog
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from railway import ErrorCode
from railway.result import Result

from delegation_gateway.domain.models import (
    AuditEvent,
    CertificateType,
    DebtQueryResult,
    DelegationGrant,
    DigitalCertificate,
    GrantStatus,
    IssuedGuide,
)

log = structlog.get_logger()

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS digital_certificates (
    id               UUID PRIMARY KEY,
    owner_client_id  TEXT NOT NULL,
    certificate_type TEXT NOT NULL,
    encoded_payload  TEXT NOT NULL,
    password         TEXT NOT NULL,
    expires_at       TIMESTAMPTZ,
    name             TEXT
);

CREATE TABLE IF NOT EXISTS delegation_grants (
    id                  UUID PRIMARY KEY,
    client_id           TEXT NOT NULL,
    attorney_tax_id     TEXT NOT NULL,
    attorney_name       TEXT NOT NULL,
    valid_until         TIMESTAMPTZ NOT NULL,
    authorized_services TEXT[] NOT NULL,
    certificate_id      UUID NOT NULL,
    issued_at           TIMESTAMPTZ,
    status              TEXT NOT NULL,
    grant_reference     TEXT,
    proof_document_ref  TEXT,
    failure_reason      TEXT,
    updated_at          TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS delegation_grants_selection_idx
    ON delegation_grants (client_id, status, valid_until DESC);

CREATE TABLE IF NOT EXISTS delegation_audit_events (
    grant_id    UUID NOT NULL,
    sequence    INTEGER NOT NULL CHECK (sequence > 0),
    occurred_at TIMESTAMPTZ NOT NULL,
    action      TEXT NOT NULL,
    outcome     TEXT NOT NULL,
    details     JSONB NOT NULL DEFAULT '{}'::jsonb,
    PRIMARY KEY (grant_id, sequence)
);

CREATE TABLE IF NOT EXISTS debt_results (
    id                UUID PRIMARY KEY,
    client_id         TEXT NOT NULL,
    jurisdiction_code TEXT NOT NULL,
    tax_id            TEXT NOT NULL,
    competence        TEXT NOT NULL,
    amount            NUMERIC(15, 2) NOT NULL,
    due_date          DATE,
    status            TEXT NOT NULL,
    document_number   TEXT,
    tax_type          TEXT,
    revenue_code      TEXT,
    queried_at        TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS guide_results (
    id                UUID PRIMARY KEY,
    client_id         TEXT NOT NULL,
    jurisdiction_code TEXT NOT NULL,
    guide_number      TEXT NOT NULL,
    barcode           TEXT,
    digitable_line    TEXT,
    due_date          DATE,
    document_url      TEXT,
    amount            NUMERIC(15, 2)
);
"""

_UPSERT_GRANT = """
INSERT INTO delegation_grants (
    id, client_id, attorney_tax_id, attorney_name, valid_until, authorized_services,
    certificate_id, issued_at, status, grant_reference, proof_document_ref,
    failure_reason, updated_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (id) DO UPDATE SET
    status = EXCLUDED.status,
    grant_reference = EXCLUDED.grant_reference,
    proof_document_ref = EXCLUDED.proof_document_ref,
    failure_reason = EXCLUDED.failure_reason,
    updated_at = EXCLUDED.updated_at
"""

_UPDATE_GRANT_IF_STATUS = """
UPDATE delegation_grants SET
    status = %s,
    grant_reference = %s,
    proof_document_ref = %s,
    failure_reason = %s,
    updated_at = %s
WHERE id = %s AND status = %s
"""

_SELECT_GRANT = "SELECT * FROM delegation_grants"

_INSERT_CERTIFICATE = """
INSERT INTO digital_certificates (
    id, owner_client_id, certificate_type, encoded_payload, password, expires_at, name
) VALUES (%s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (id) DO UPDATE SET
    encoded_payload = EXCLUDED.encoded_payload,
    password = EXCLUDED.password,
    expires_at = EXCLUDED.expires_at,
    name = EXCLUDED.name
"""

_INSERT_AUDIT_EVENT = """
INSERT INTO delegation_audit_events (grant_id, sequence, occurred_at, action, outcome, details)
VALUES (%s, %s, %s, %s, %s, %s)
"""

_INSERT_DEBT = """
INSERT INTO debt_results (
    id, client_id, jurisdiction_code, tax_id, competence, amount, due_date,
    status, document_number, tax_type, revenue_code, queried_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_INSERT_GUIDE = """
INSERT INTO guide_results (
    id, client_id, jurisdiction_code, guide_number, barcode, digitable_line,
    due_date, document_url, amount
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_json_dumps = partial(json.dumps, default=str)


def apply_schema(dsn: str) -> Result[int]:
    """Create the tables if they do not exist yet. Idempotent."""

    def _apply() -> int:
        with psycopg.connect(dsn) as conn, conn.transaction():
            conn.execute(SCHEMA_DDL)
        log.info("repository.schema_applied")
        return 1

    return Result.from_computation(_apply, ErrorCode.DATABASE_ERROR, "Failed to apply database schema")


def _grant_from_row(row: dict[str, Any]) -> DelegationGrant:
    return DelegationGrant(
        id=row["id"],
        client_id=row["client_id"],
        attorney_tax_id=row["attorney_tax_id"],
        attorney_name=row["attorney_name"],
        valid_until=row["valid_until"],
        authorized_services=frozenset(row["authorized_services"]),
        certificate_id=row["certificate_id"],
        issued_at=row["issued_at"],
        status=GrantStatus(row["status"]),
        grant_reference=row["grant_reference"],
        proof_document_ref=row["proof_document_ref"],
        failure_reason=row["failure_reason"],
        updated_at=row["updated_at"],
    )


class PsycopgDelegationRepository:
    """
    Persist DelegationGrant aggregates.

    Implements the DelegationRepository port. `save` upserts but only the
    lifecycle columns are ever updated; scope and validity keep their
    original values. With `expected_status` the update is guarded by the
    stored status, so a transition that lost a race changes no row.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def save(
        self, grant: DelegationGrant, expected_status: GrantStatus | None = None
    ) -> Result[DelegationGrant]:
        if expected_status is None:
            return Result.from_computation(
                lambda: self._upsert(grant),
                ErrorCode.DATABASE_ERROR,
                "Failed to persist grant",
            )
        return Result.from_computation(
            lambda: self._update_if_status(grant, expected_status),
            ErrorCode.DATABASE_ERROR,
            "Failed to persist grant",
        ).flat_map(
            lambda updated: Result.success(grant)
            if updated
            else Result.failure(
                ErrorCode.INVALID_TRANSITION,
                f"Grant {grant.id} is no longer {expected_status.value}",
                details={"expected_status": expected_status.value},
            )
        )

    def _update_if_status(self, grant: DelegationGrant, expected_status: GrantStatus) -> bool:
        with psycopg.connect(self._dsn) as conn, conn.transaction():
            cursor = conn.execute(
                _UPDATE_GRANT_IF_STATUS,
                (
                    grant.status.value,
                    grant.grant_reference,
                    grant.proof_document_ref,
                    grant.failure_reason,
                    grant.updated_at,
                    grant.id,
                    expected_status.value,
                ),
            )
            updated = cursor.rowcount == 1
        log.debug(
            "repository.grant_updated",
            grant_id=str(grant.id),
            status=grant.status.value,
            expected_status=expected_status.value,
            updated=updated,
        )
        return updated

    def _upsert(self, grant: DelegationGrant) -> DelegationGrant:
        with psycopg.connect(self._dsn) as conn, conn.transaction():
            conn.execute(
                _UPSERT_GRANT,
                (
                    grant.id,
                    grant.client_id,
                    grant.attorney_tax_id,
                    grant.attorney_name,
                    grant.valid_until,
                    sorted(grant.authorized_services),
                    grant.certificate_id,
                    grant.issued_at,
                    grant.status.value,
                    grant.grant_reference,
                    grant.proof_document_ref,
                    grant.failure_reason,
                    grant.updated_at,
                ),
            )
        log.debug("repository.grant_saved", grant_id=str(grant.id), status=grant.status.value)
        return grant

    def find_by_id(self, grant_id: UUID) -> Result[DelegationGrant]:
        return Result.from_computation(
            lambda: self._fetch_one(grant_id),
            ErrorCode.DATABASE_ERROR,
            "Failed to load grant",
        ).flat_map(lambda row: Result.from_optional(row, f"Grant {grant_id} not found")).map(
            _grant_from_row
        )

    def _fetch_one(self, grant_id: UUID) -> dict[str, Any] | None:
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
            return conn.execute(f"{_SELECT_GRANT} WHERE id = %s", (grant_id,)).fetchone()

    def find_by_client(
        self,
        client_id: str,
        status: GrantStatus | None = None,
        valid_after: datetime | None = None,
        limit: int | None = None,
    ) -> Result[list[DelegationGrant]]:
        return Result.from_computation(
            lambda: self._fetch_by_client(client_id, status, valid_after, limit),
            ErrorCode.DATABASE_ERROR,
            "Failed to load grants",
        )

    def _fetch_by_client(
        self,
        client_id: str,
        status: GrantStatus | None,
        valid_after: datetime | None,
        limit: int | None,
    ) -> list[DelegationGrant]:
        clauses = ["client_id = %s"]
        params: list[Any] = [client_id]
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if valid_after is not None:
            clauses.append("valid_until > %s")
            params.append(valid_after)
            order = "valid_until DESC"
        else:
            order = "issued_at DESC NULLS LAST"
        query = f"{_SELECT_GRANT} WHERE {' AND '.join(clauses)} ORDER BY {order}"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_grant_from_row(row) for row in rows]


class PsycopgCredentialStore:
    """Implements the CredentialStore port over digital_certificates."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def save(self, certificate: DigitalCertificate) -> Result[DigitalCertificate]:
        def _insert() -> DigitalCertificate:
            with psycopg.connect(self._dsn) as conn, conn.transaction():
                conn.execute(
                    _INSERT_CERTIFICATE,
                    (
                        certificate.id,
                        certificate.owner_client_id,
                        certificate.certificate_type.value,
                        certificate.encoded_payload,
                        certificate.password,
                        certificate.expires_at,
                        certificate.name,
                    ),
                )
            return certificate

        return Result.from_computation(_insert, ErrorCode.DATABASE_ERROR, "Failed to persist certificate")

    def find_certificate(self, certificate_id: UUID) -> Result[DigitalCertificate]:
        def _fetch() -> dict[str, Any] | None:
            with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
                return conn.execute(
                    "SELECT * FROM digital_certificates WHERE id = %s", (certificate_id,)
                ).fetchone()

        return (
            Result.from_computation(_fetch, ErrorCode.DATABASE_ERROR, "Failed to load certificate")
            .flat_map(lambda row: Result.from_optional(row, f"Certificate {certificate_id} not found"))
            .map(
                lambda row: DigitalCertificate(
                    id=row["id"],
                    owner_client_id=row["owner_client_id"],
                    certificate_type=CertificateType(row["certificate_type"]),
                    encoded_payload=row["encoded_payload"],
                    password=row["password"],
                    expires_at=row["expires_at"],
                    name=row["name"],
                )
            )
        )


class PsycopgAuditLogStore:
    """
    Implements the AuditLogStore port over delegation_audit_events.

    The table is append-only: this class issues INSERT and SELECT statements only.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def load(self, grant_id: UUID) -> Result[list[AuditEvent]]:
        def _fetch() -> list[AuditEvent]:
            with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
                rows = conn.execute(
                    "SELECT * FROM delegation_audit_events WHERE grant_id = %s ORDER BY sequence",
                    (grant_id,),
                ).fetchall()
            return [
                AuditEvent(
                    occurred_at=row["occurred_at"],
                    action=row["action"],
                    outcome=row["outcome"],
                    details=row["details"] or {},
                    sequence=row["sequence"],
                )
                for row in rows
            ]

        return Result.from_computation(_fetch, ErrorCode.DATABASE_ERROR, "Failed to load audit log")

    def version(self, grant_id: UUID) -> Result[int]:
        def _fetch() -> int:
            with psycopg.connect(self._dsn) as conn:
                row = conn.execute(
                    "SELECT COALESCE(MAX(sequence), 0) FROM delegation_audit_events WHERE grant_id = %s",
                    (grant_id,),
                ).fetchone()
            return int(row[0]) if row else 0

        return Result.from_computation(_fetch, ErrorCode.DATABASE_ERROR, "Failed to read audit version")

    def append_if_version(
        self, grant_id: UUID, expected_version: int, event: AuditEvent
    ) -> Result[AuditEvent]:
        stored = event.at_sequence(expected_version + 1)
        try:
            with psycopg.connect(self._dsn) as conn, conn.transaction():
                conn.execute(
                    _INSERT_AUDIT_EVENT,
                    (
                        grant_id,
                        stored.sequence,
                        stored.occurred_at,
                        stored.action,
                        stored.outcome,
                        Jsonb(dict(stored.details), dumps=_json_dumps),
                    ),
                )
        except UniqueViolation as e:
            return Result.failure(
                ErrorCode.AUDIT_VERSION_CONFLICT,
                f"Audit log of grant {grant_id} moved past version {expected_version}",
                e,
                details={"expected_version": expected_version},
            )
        except psycopg.Error as e:
            return Result.failure(ErrorCode.DATABASE_ERROR, f"Failed to append audit event: {e}", e)
        return Result.success(stored)


class PsycopgResultStore:
    """Implements the ResultStore port: one row per debt, one row per guide."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def save_debts(self, client_id: str, result: DebtQueryResult) -> Result[int]:
        def _insert() -> int:
            with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor() as cur:
                for debt in result.debts:
                    cur.execute(
                        _INSERT_DEBT,
                        (
                            uuid4(),
                            client_id,
                            result.jurisdiction_code,
                            result.tax_id,
                            debt.competence,
                            debt.amount,
                            debt.due_date,
                            debt.status,
                            debt.document_number,
                            debt.tax_type,
                            debt.revenue_code,
                            result.queried_at,
                        ),
                    )
            log.info(
                "repository.debts_stored",
                jurisdiction=result.jurisdiction_code,
                total_rows=result.total_found,
            )
            return result.total_found

        return Result.from_computation(_insert, ErrorCode.DATABASE_ERROR, "Failed to persist debts")

    def save_guide(self, client_id: str, guide: IssuedGuide) -> Result[IssuedGuide]:
        def _insert() -> IssuedGuide:
            with psycopg.connect(self._dsn) as conn, conn.transaction():
                conn.execute(
                    _INSERT_GUIDE,
                    (
                        uuid4(),
                        client_id,
                        guide.jurisdiction_code,
                        guide.guide_number,
                        guide.barcode,
                        guide.digitable_line,
                        guide.due_date,
                        guide.document_url,
                        guide.amount,
                    ),
                )
            return guide

        return Result.from_computation(_insert, ErrorCode.DATABASE_ERROR, "Failed to persist guide")
