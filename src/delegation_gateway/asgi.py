"""
FastAPI + Uvicorn ASGI application — the gateway as an HTTP service.

Uvicorn serves this app with graceful shutdown (SIGTERM → drain + exit). The
fallback scheduler runs in a background thread started by the lifespan.

Architecture:
  - FastAPI: lightweight web framework; handlers are sync and run in its threadpool
  - Uvicorn: production ASGI server (handles signals, graceful shutdown)
  - APScheduler: BackgroundScheduler executing fallback collection jobs
  - railway.http_support: maps every failure to an HTTP status and error body

Entry point for production: uvicorn delegation_gateway.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from railway.http_support import ErrorResponse, HttpStatusMapper, build_fastapi_response

from delegation_gateway import __version__
from delegation_gateway.config import AppSettings
from delegation_gateway.domain.masking import mask_tax_id
from delegation_gateway.domain.models import (
    Authenticated,
    Availability,
    DebtQueryResult,
    DelegationGrant,
    GatewayOutcome,
    GrantValidity,
    GrantView,
    GuideRequest,
    IssuanceOutcome,
    IssueGrantRequest,
    IssuedGuide,
    Simulated,
)
from delegation_gateway.main import Services, build_services, configure_structlog

# ─────────────────────── Global State ───────────────────────
# Set during app startup and read by the handlers and health check.

_services: Services | None = None
_error_message: str | None = None
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: load settings, wire services, start the fallback scheduler.
    Shutdown: stop the scheduler, letting running jobs finish.
    """
    global _services, _error_message

    try:
        settings = AppSettings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)
    log.info("asgi.startup_config", version=__version__, log_level=settings.log_level)

    try:
        _services = build_services(settings)
        _services.scheduler.start()
    except Exception as e:
        _error_message = f"Failed to initialize services: {e}"
        log.error("asgi.init_error", error=_error_message)
        raise

    log.info("asgi.startup_complete", jurisdictions=len(_services.registry))

    yield  # ← App is running here; Uvicorn handles requests

    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    try:
        _services.scheduler.shutdown(wait=True)
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))
    log.info("asgi.shutdown_complete")


app = FastAPI(
    title="delegation-gateway",
    description="Delegated access to state tax authorities through procurations",
    version=__version__,
    lifespan=lifespan,
)


# ─────────────────────── Request bodies ───────────────────────


class IssueGrantBody(BaseModel):
    client_id: str
    certificate_id: UUID
    attorney_tax_id: str
    attorney_name: str
    authorized_services: list[str]
    validity_days: int


class CancelBody(BaseModel):
    reason: str = Field(default="cancelled by operator")


class DebtQueryBody(BaseModel):
    tax_id: str


class GuideBody(BaseModel):
    tax_id: str
    competence: str
    amount: Decimal
    tax_type: str
    revenue_code: str | None = None
    due_date: date | None = None


# ─────────────────────── Serializers ───────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _amount(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _grant(grant: DelegationGrant) -> dict[str, Any]:
    return {
        "id": str(grant.id),
        "client_id": grant.client_id,
        "attorney_tax_id": mask_tax_id(grant.attorney_tax_id),
        "attorney_name": grant.attorney_name,
        "status": grant.status.value,
        "authorized_services": sorted(grant.authorized_services),
        "certificate_id": str(grant.certificate_id),
        "issued_at": _iso(grant.issued_at),
        "valid_until": grant.valid_until.isoformat(),
        "grant_reference": grant.grant_reference,
        "proof_document_ref": grant.proof_document_ref,
        "failure_reason": grant.failure_reason,
        "updated_at": _iso(grant.updated_at),
    }


def _view(view: GrantView) -> dict[str, Any]:
    return {"grant": _grant(view.grant), "audit_log": [e.to_dict() for e in view.audit_log]}


def _issuance(outcome: IssuanceOutcome) -> dict[str, Any]:
    return {
        "grant": _grant(outcome.grant),
        "audit_log": [e.to_dict() for e in outcome.audit_log],
        "error": ErrorResponse.from_failure(outcome.failure).to_dict() if outcome.failure else None,
    }


def _validity(validity: GrantValidity) -> dict[str, Any]:
    return {
        "grant_id": str(validity.grant_id),
        "validity": validity.validity.value,
        "status": validity.status.value,
        "message": validity.message,
    }


def _availability(availability: Availability) -> dict[str, Any]:
    return {
        "client_id": availability.client_id,
        "jurisdiction_code": availability.jurisdiction_code,
        "available": availability.available,
        "message": availability.message,
        "grant_id": str(availability.grant_id) if availability.grant_id else None,
    }


def _data(data: DebtQueryResult | IssuedGuide) -> dict[str, Any]:
    if isinstance(data, DebtQueryResult):
        return {
            "jurisdiction_code": data.jurisdiction_code,
            "tax_id": mask_tax_id(data.tax_id),
            "queried_at": data.queried_at.isoformat(),
            "total_found": data.total_found,
            "total_amount": str(data.total_amount),
            "debts": [
                {
                    "competence": d.competence,
                    "amount": str(d.amount),
                    "due_date": _iso(d.due_date),
                    "status": d.status,
                    "document_number": d.document_number,
                    "tax_type": d.tax_type,
                    "revenue_code": d.revenue_code,
                }
                for d in data.debts
            ],
        }
    return {
        "jurisdiction_code": data.jurisdiction_code,
        "guide_number": data.guide_number,
        "barcode": data.barcode,
        "digitable_line": data.digitable_line,
        "due_date": _iso(data.due_date),
        "document_url": data.document_url,
        "amount": _amount(data.amount),
    }


def _outcome(outcome: GatewayOutcome) -> dict[str, Any]:
    match outcome:
        case Authenticated(data=data, grant_id=grant_id, warnings=warnings):
            return {
                "simulated": False,
                "grant_id": str(grant_id),
                "warnings": list(warnings),
                "data": _data(data),
            }
        case Simulated():
            return {
                "simulated": True,
                "operation": outcome.operation,
                "jurisdiction_code": outcome.jurisdiction_code,
                "reason_code": outcome.reason_code,
                "warning": outcome.warning,
                "job_id": outcome.job_id,
            }
    raise TypeError(f"Unexpected gateway outcome: {outcome!r}")  # pragma: no cover


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "unavailable", "reason": _error_message or "Services not initialized"},
    )


# ─────────────────────── Endpoints ───────────────────────


@app.get("/health")
def health() -> JSONResponse:
    """
    Liveness probe.

    Returns 200 once services are wired, 503 if startup failed or has not finished.
    """
    if _error_message or _services is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message or "Services not initialized"},
        )
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "version": __version__,
            "scheduler_running": bool(_services.scheduler.running),
        },
    )


@app.post("/grants")
def issue_grant(body: IssueGrantBody) -> JSONResponse:
    """
    Create a grant and register it at the procuration portal.

    201 when the whole sequence completed; when the grant was created but the
    remote sequence failed, the grant and its audit log are returned with the
    status matching the failure.
    """
    if _services is None:
        return _unavailable()
    result = _services.lifecycle.issue(
        IssueGrantRequest(
            client_id=body.client_id,
            certificate_id=body.certificate_id,
            attorney_tax_id=body.attorney_tax_id,
            attorney_name=body.attorney_name,
            authorized_services=frozenset(body.authorized_services),
            validity_days=body.validity_days,
        )
    )
    if result.is_success() and not result.value().succeeded:
        outcome = result.value()
        return JSONResponse(
            status_code=HttpStatusMapper.map_failure(outcome.failure),
            content=_issuance(outcome),
        )
    return build_fastapi_response(result, success_status=201, serializer=_issuance)


@app.get("/grants/{grant_id}")
def get_grant(grant_id: UUID) -> JSONResponse:
    if _services is None:
        return _unavailable()
    return build_fastapi_response(_services.lifecycle.get_grant(grant_id), serializer=_view)


@app.get("/grants/{grant_id}/validity")
def grant_validity(grant_id: UUID) -> JSONResponse:
    if _services is None:
        return _unavailable()
    return build_fastapi_response(_services.lifecycle.validate_grant(grant_id), serializer=_validity)


@app.post("/grants/{grant_id}/cancel")
def cancel_grant(grant_id: UUID, body: CancelBody) -> JSONResponse:
    if _services is None:
        return _unavailable()
    return build_fastapi_response(
        _services.lifecycle.cancel(grant_id, body.reason), serializer=_grant
    )


@app.get("/clients/{client_id}/grants")
def list_grants(client_id: str) -> JSONResponse:
    if _services is None:
        return _unavailable()
    return build_fastapi_response(
        _services.lifecycle.list_grants(client_id),
        serializer=lambda grants: [_grant(g) for g in grants],
    )


@app.get("/clients/{client_id}/jurisdictions/{jurisdiction_code}/availability")
def availability(client_id: str, jurisdiction_code: str) -> JSONResponse:
    if _services is None:
        return _unavailable()
    return build_fastapi_response(
        _services.selector.has_valid_grant(client_id, jurisdiction_code),
        serializer=_availability,
    )


@app.post("/clients/{client_id}/jurisdictions/{jurisdiction_code}/debts")
def query_debts(client_id: str, jurisdiction_code: str, body: DebtQueryBody) -> JSONResponse:
    if _services is None:
        return _unavailable()
    return build_fastapi_response(
        _services.gateway.query_debts(client_id, jurisdiction_code, body.tax_id),
        serializer=_outcome,
    )


@app.post("/clients/{client_id}/jurisdictions/{jurisdiction_code}/guides")
def issue_guide(client_id: str, jurisdiction_code: str, body: GuideBody) -> JSONResponse:
    if _services is None:
        return _unavailable()
    request = GuideRequest(
        tax_id=body.tax_id,
        competence=body.competence,
        amount=body.amount,
        tax_type=body.tax_type,
        revenue_code=body.revenue_code,
        due_date=body.due_date,
    )
    return build_fastapi_response(
        _services.gateway.issue_guide(client_id, jurisdiction_code, request),
        success_status=201,
        serializer=_outcome,
    )


if __name__ == "__main__":
    # For local testing: python -m uvicorn delegation_gateway.asgi:app --reload
    import uvicorn

    uvicorn.run(
        "delegation_gateway.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
