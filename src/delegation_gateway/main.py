"""
Application entry point — wires dependencies and starts the HTTP service.

Composition root: creates concrete adapters and injects them into the
lifecycle manager, the selector, the authentication broker and the gateway.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog for structured logging (with secret redaction)
  2. Load and validate configuration from environment
  3. Create concrete adapter instances (PostgreSQL, httpx, filesystem, APScheduler)
  4. Wire the services into a Services bundle
  5. Serve the FastAPI application with uvicorn
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog
from apscheduler.schedulers.background import BackgroundScheduler

from delegation_gateway import __version__
from delegation_gateway.adapters.http_client import HttpJurisdictionClient, HttpProcurationPortal
from delegation_gateway.adapters.proof_store import FilesystemProofStore
from delegation_gateway.adapters.repository import (
    PsycopgAuditLogStore,
    PsycopgCredentialStore,
    PsycopgDelegationRepository,
    PsycopgResultStore,
    apply_schema,
)
from delegation_gateway.audit import AuditTrail
from delegation_gateway.auth_broker import AuthenticationBroker
from delegation_gateway.config import AppSettings
from delegation_gateway.domain.masking import MASK, SECRET_KEYS
from delegation_gateway.gateway import TaxGateway
from delegation_gateway.jurisdictions import JurisdictionRegistry
from delegation_gateway.lifecycle import DelegationLifecycleManager
from delegation_gateway.scheduler import SchedulerFallbackQueue, create_scheduler
from delegation_gateway.selector import GrantSelector


def redact_secrets(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: never let a password, token or key reach the output."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SECRET_KEYS or lowered.startswith("senha"):
            event_dict[key] = MASK
    return event_dict


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output; every event passes through
    `redact_secrets` before rendering.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # The railway execution contexts log through the standard library.
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO), format="%(message)s")


@dataclass(frozen=True, slots=True)
class Services:
    """Everything the HTTP surface needs, fully wired."""

    lifecycle: DelegationLifecycleManager
    selector: GrantSelector
    gateway: TaxGateway
    registry: JurisdictionRegistry
    scheduler: BackgroundScheduler


def build_services(settings: AppSettings) -> Services:
    """
    Instantiate all concrete adapters and wire the services.

    Creates the PostgreSQL stores, the httpx clients for the portal and the
    jurisdictions, the filesystem proof store and the APScheduler fallback queue.
    """
    dsn = settings.database.get_dsn()
    if settings.database.apply_schema:
        applied = apply_schema(dsn)
        if applied.is_failure():
            raise RuntimeError(applied.error().message)

    registry = JurisdictionRegistry.default()
    repository = PsycopgDelegationRepository(dsn)
    credentials = PsycopgCredentialStore(dsn)
    audit = AuditTrail(PsycopgAuditLogStore(dsn), max_attempts=settings.gateway.audit_max_attempts)
    results = PsycopgResultStore(dsn)

    portal = HttpProcurationPortal(
        base_url=settings.portal.base_url,
        auth_path=settings.portal.auth_path,
        form_path=settings.portal.form_path,
        submit_path=settings.portal.submit_path,
        proof_path=settings.portal.proof_path,
        timeout=settings.gateway.http_timeout_seconds,
        user_agent=settings.gateway.user_agent,
    )
    jurisdiction_client = HttpJurisdictionClient(
        timeout=settings.gateway.http_timeout_seconds,
        user_agent=settings.gateway.user_agent,
    )
    proof_store = FilesystemProofStore(settings.proof_store.directory)

    scheduler = create_scheduler()
    fallback = SchedulerFallbackQueue(scheduler)

    selector = GrantSelector(repository, registry, candidate_limit=settings.gateway.candidate_limit)
    broker = AuthenticationBroker(
        registry,
        jurisdiction_client,
        api_keys=settings.api_keys(),
        default_session_ttl=timedelta(seconds=settings.gateway.default_session_ttl_seconds),
    )
    lifecycle = DelegationLifecycleManager(repository, credentials, audit, portal, proof_store)
    gateway = TaxGateway(
        registry=registry,
        selector=selector,
        broker=broker,
        credentials=credentials,
        client=jurisdiction_client,
        audit=audit,
        results=results,
        fallback=fallback,
        fallback_enabled=settings.fallback_enabled,
    )
    return Services(
        lifecycle=lifecycle,
        selector=selector,
        gateway=gateway,
        registry=registry,
        scheduler=scheduler,
    )


def main() -> None:
    """Validate configuration and serve the ASGI application."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        fallback_enabled=settings.fallback_enabled,
        jurisdictions_with_api_key=sorted(settings.jurisdiction_api_keys),
    )

    import uvicorn

    try:
        uvicorn.run("delegation_gateway.asgi:app", host="0.0.0.0", port=8000, log_level="info")
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
