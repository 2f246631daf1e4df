"""
AuthenticationBroker — short-lived sessions against a jurisdiction, on behalf
of a grant.

    resolve jurisdiction config                  → CONFIGURATION_ERROR
      → local checks on certificate / grant      → AUTHENTICATION_ERROR(kind=...)
        → JurisdictionClient.authenticate        → AUTHENTICATION_ERROR(kind=rejected)
                                                   NETWORK_TIMEOUT(kind=network)
          → SessionToken(expires_at = remote expiry or now + default TTL)

Failure kinds reported in `details["kind"]`:
  expired_certificate, invalid_certificate, missing_api_key,
  missing_reference, rejected, network.

The PKCS#12 blob is opened with `cryptography` before any network call so a
wrong password never reaches the remote side. Tokens are not cached; two
concurrent requests for the same (grant, jurisdiction) share one remote
authentication instead of racing.
"""

from __future__ import annotations

import base64
import binascii
import threading
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from cryptography.hazmat.primitives.serialization import pkcs12
from railway import ErrorCode, FailureDescription
from railway.result import Result

from delegation_gateway.domain.masking import mask_tax_id
from delegation_gateway.domain.models import (
    AuthPayload,
    DelegationGrant,
    DigitalCertificate,
    JurisdictionConfig,
    RemoteToken,
    SessionToken,
)
from delegation_gateway.domain.ports import JurisdictionClient
from delegation_gateway.jurisdictions import JurisdictionRegistry

log = structlog.get_logger()

DEFAULT_SESSION_TTL = timedelta(minutes=5)

KIND_EXPIRED_CERTIFICATE = "expired_certificate"
KIND_INVALID_CERTIFICATE = "invalid_certificate"
KIND_MISSING_API_KEY = "missing_api_key"
KIND_MISSING_REFERENCE = "missing_reference"
KIND_REJECTED = "rejected"
KIND_NETWORK = "network"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _auth_failure(kind: str, message: str, exception: Exception | None = None) -> Result[Any]:
    return Result.failure(
        ErrorCode.AUTHENTICATION_ERROR, message, exception, details={"kind": kind, "retryable": False}
    )


class _Flight:
    """One in-progress authentication that followers wait on."""

    __slots__ = ("done", "result")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Result[SessionToken] = Result.failure(
            ErrorCode.UNKNOWN_ERROR, "Authentication aborted before completion"
        )


class AuthenticationBroker:
    def __init__(
        self,
        registry: JurisdictionRegistry,
        client: JurisdictionClient,
        api_keys: Mapping[str, str] | None = None,
        default_session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._registry = registry
        self._client = client
        self._api_keys = {code.upper(): key for code, key in (api_keys or {}).items()}
        self._default_session_ttl = default_session_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: dict[tuple[UUID, str], _Flight] = {}

    def authenticate(
        self,
        jurisdiction_code: str,
        grant: DelegationGrant,
        certificate: DigitalCertificate,
    ) -> Result[SessionToken]:
        """
        Obtain a session token for `jurisdiction_code` acting under `grant`.

        Concurrent calls for the same grant and jurisdiction are coalesced:
        the first caller performs the remote authentication and the others
        receive its result.
        """
        key = (grant.id, jurisdiction_code.upper())
        with self._lock:
            flight = self._in_flight.get(key)
            leader = flight is None
            if flight is None:
                flight = self._in_flight[key] = _Flight()

        if not leader:
            log.debug("auth.coalesced", grant_id=str(grant.id), jurisdiction=key[1])
            flight.done.wait()
            return flight.result

        try:
            flight.result = self._authenticate(key[1], grant, certificate)
        finally:
            with self._lock:
                del self._in_flight[key]
            flight.done.set()
        return flight.result

    def _authenticate(
        self, code: str, grant: DelegationGrant, certificate: DigitalCertificate
    ) -> Result[SessionToken]:
        now = self._clock()
        return (
            self._registry.lookup(code)
            .flat_map(lambda config: self._build_payload(config, grant, certificate, now))
            .flat_map(
                lambda prepared: self._client.authenticate(prepared[0], prepared[1])
                .map_failure(_classify_remote_failure)
                .flat_map(lambda remote: self._to_session(code, remote, now))
            )
            .peek(
                lambda session: log.info(
                    "auth.session_opened",
                    jurisdiction=code,
                    grant_id=str(grant.id),
                    expires_at=session.expires_at.isoformat(),
                )
            )
            .peek_failure(
                lambda err: log.warning(
                    "auth.failed",
                    jurisdiction=code,
                    grant_id=str(grant.id),
                    code=err.code.value,
                    kind=err.details.get("kind"),
                )
            )
        )

    def _build_payload(
        self,
        config: JurisdictionConfig,
        grant: DelegationGrant,
        certificate: DigitalCertificate,
        now: datetime,
    ) -> Result[tuple[JurisdictionConfig, AuthPayload]]:
        if config.requires_certificate:
            checked = self._check_certificate(certificate, grant, now)
            if checked.is_failure():
                return Result.failure_from(checked.error())

        api_key = self._api_keys.get(config.code.upper())
        if config.requires_api_key and not api_key:
            return _auth_failure(
                KIND_MISSING_API_KEY, f"Jurisdiction {config.code} requires an API key and none is configured"
            )
        if not grant.grant_reference:
            return _auth_failure(
                KIND_MISSING_REFERENCE, f"Grant {grant.id} has no procuration reference number"
            )

        log.debug(
            "auth.payload_ready",
            jurisdiction=config.code,
            attorney=mask_tax_id(grant.attorney_tax_id),
        )
        return Result.success(
            (
                config,
                AuthPayload(
                    certificate_payload=certificate.encoded_payload,
                    certificate_password=certificate.password,
                    grant_reference=grant.grant_reference,
                    attorney_tax_id=grant.attorney_tax_id,
                    api_key=api_key,
                ),
            )
        )

    @staticmethod
    def _check_certificate(
        certificate: DigitalCertificate, grant: DelegationGrant, now: datetime
    ) -> Result[DigitalCertificate]:
        """Expiry, ownership and PKCS#12 integrity checks that need no network."""
        if certificate.is_expired(now):
            return _auth_failure(KIND_EXPIRED_CERTIFICATE, f"Certificate {certificate.id} has expired")
        if certificate.owner_client_id != grant.client_id:
            return _auth_failure(
                KIND_INVALID_CERTIFICATE,
                f"Certificate {certificate.id} does not belong to client {grant.client_id}",
            )
        if not certificate.encoded_payload:
            return _auth_failure(KIND_INVALID_CERTIFICATE, f"Certificate {certificate.id} has no payload")

        try:
            raw = base64.b64decode(certificate.encoded_payload, validate=True)
        except (binascii.Error, ValueError) as e:
            return _auth_failure(
                KIND_INVALID_CERTIFICATE, f"Certificate {certificate.id} payload is not valid base64", e
            )

        try:
            _, x509_cert, _ = pkcs12.load_key_and_certificates(raw, certificate.password.encode())
        except ValueError as e:
            return _auth_failure(
                KIND_INVALID_CERTIFICATE,
                f"Certificate {certificate.id} cannot be opened with the stored password",
                e,
            )

        if x509_cert is not None and x509_cert.not_valid_after_utc <= now:
            return _auth_failure(
                KIND_EXPIRED_CERTIFICATE,
                f"Certificate {certificate.id} expired on {x509_cert.not_valid_after_utc.date().isoformat()}",
            )
        return Result.success(certificate)

    def _to_session(self, code: str, remote: RemoteToken, now: datetime) -> Result[SessionToken]:
        expires_at = remote.expires_at or now + self._default_session_ttl
        if expires_at <= now:
            return _auth_failure(KIND_REJECTED, f"Jurisdiction {code} returned an already expired token")
        return Result.success(SessionToken(jurisdiction_code=code, token=remote.token, expires_at=expires_at))


def _classify_remote_failure(err: FailureDescription) -> FailureDescription:
    match err.code:
        case ErrorCode.AUTHENTICATION_ERROR:
            return err.with_details(kind=KIND_REJECTED, retryable=False)
        case ErrorCode.NETWORK_TIMEOUT:
            return err.with_details(kind=KIND_NETWORK, stage="authentication", retryable=True)
        case _:
            return err.with_details(stage="authentication", retryable=err.retryable)
