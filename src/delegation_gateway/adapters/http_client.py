"""
HTTP adapters — state tax authorities and the procuration portal via httpx.

Adapter layer — implements the JurisdictionClient and ProcurationPortal
ports with sync httpx calls. One generic client serves every jurisdiction:
URLs and API-key requirements come from the JurisdictionConfig it is given.

Response classification (no exception leaks past this module):
  timeout / transport error      → NETWORK_TIMEOUT        (retryable)
  401 / 403                      → AUTHENTICATION_ERROR
  other 4xx / 5xx                → UPSTREAM_OPERATION_ERROR (remote_status, remote_detail)
  2xx with an unusable body      → UPSTREAM_OPERATION_ERROR (stage=decoding)

Calls are not retried here; whether to try again is the caller's decision,
guided by `details["retryable"]`.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from railway import ErrorCode
from railway.result import Result

from delegation_gateway.domain.masking import mask_tax_id
from delegation_gateway.domain.models import (
    AuthPayload,
    DelegationGrant,
    DigitalCertificate,
    GuideRequest,
    JurisdictionConfig,
    PortalSession,
    RemoteToken,
    SessionToken,
)

log = structlog.get_logger()

DEFAULT_USER_AGENT = "Sistema-Contabil-Integrado/1.0"
AUTHENTICATION_TYPE = "certificado_digital_com_procuracao"
DEBT_QUERY_TYPE = "debitos_pendentes"

_REMOTE_DETAIL_LIMIT = 500


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _send(
    method: str,
    url: str,
    timeout: float,
    headers: dict[str, str],
    json: dict[str, Any] | None = None,
) -> Result[httpx.Response]:
    """Perform one HTTP call and classify every way it can go wrong."""
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.request(method, url, headers=headers, json=json)
    except httpx.TimeoutException as e:
        return Result.failure(
            ErrorCode.NETWORK_TIMEOUT,
            f"Timed out calling {url}",
            e,
            details={"url": url, "retryable": True},
        )
    except httpx.HTTPError as e:
        return Result.failure(
            ErrorCode.NETWORK_TIMEOUT,
            f"Network error calling {url}: {e}",
            e,
            details={"url": url, "retryable": True},
        )

    if response.status_code in (401, 403):
        return Result.failure(
            ErrorCode.AUTHENTICATION_ERROR,
            f"{url} refused the credentials (HTTP {response.status_code})",
            details={
                "url": url,
                "remote_status": response.status_code,
                "remote_detail": response.text[:_REMOTE_DETAIL_LIMIT],
                "retryable": False,
            },
        )
    if response.is_error:
        return Result.failure(
            ErrorCode.UPSTREAM_OPERATION_ERROR,
            f"{url} answered HTTP {response.status_code}",
            details={
                "url": url,
                "remote_status": response.status_code,
                "remote_detail": response.text[:_REMOTE_DETAIL_LIMIT],
                "retryable": False,
            },
        )
    return Result.success(response)


def _json_object(response: httpx.Response) -> Result[dict[str, Any]]:
    try:
        body = response.json()
    except ValueError as e:
        return Result.failure(
            ErrorCode.UPSTREAM_OPERATION_ERROR,
            f"{response.request.url} did not return JSON",
            e,
            details={"stage": "decoding", "retryable": False},
        )
    if not isinstance(body, dict):
        return Result.failure(
            ErrorCode.UPSTREAM_OPERATION_ERROR,
            f"{response.request.url} returned a JSON {type(body).__name__}, expected an object",
            details={"stage": "decoding", "retryable": False},
        )
    return Result.success(body)


def _token_expiry(body: dict[str, Any], now: datetime) -> datetime | None:
    """Remote-declared expiry: `expires_in` seconds or an ISO `expires_at`."""
    expires_in = body.get("expires_in")
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        return now + timedelta(seconds=expires_in)
    expires_at = body.get("expires_at")
    if isinstance(expires_at, str):
        try:
            parsed = datetime.fromisoformat(expires_at)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _extract_token(body: dict[str, Any], url: str, now: datetime) -> Result[RemoteToken]:
    token = body.get("access_token") or body.get("token")
    if not token:
        return Result.failure(
            ErrorCode.UPSTREAM_OPERATION_ERROR,
            f"{url} answered without a token",
            details={"stage": "authentication", "retryable": False},
        )
    return Result.success(RemoteToken(token=str(token), expires_at=_token_expiry(body, now)))


class HttpJurisdictionClient:
    """
    Generic client for any state tax authority described by a JurisdictionConfig.

    Implements the JurisdictionClient port.
    """

    def __init__(
        self,
        timeout: float = 30,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._timeout = timeout
        self._user_agent = user_agent
        self._clock = clock

    def _headers(self, bearer: str | None = None, api_key: str | None = None) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if api_key:
            headers["x-api-key"] = api_key
        return headers

    def authenticate(self, config: JurisdictionConfig, payload: AuthPayload) -> Result[RemoteToken]:
        """
        POST {base_url}{auth_path} with the certificate and the procuration data.

        Returns the raw token and the remote-declared expiry, if any.
        """
        body = {
            "certificado": payload.certificate_payload,
            "senha_certificado": payload.certificate_password,
            "procuracao_numero": payload.grant_reference,
            "procurador_cpf": payload.attorney_tax_id,
            "tipo_autenticacao": AUTHENTICATION_TYPE,
        }
        return (
            _send("POST", config.auth_url, self._timeout, self._headers(api_key=payload.api_key), body)
            .flat_map(_json_object)
            .flat_map(lambda data: _extract_token(data, config.auth_url, self._clock()))
            .peek(lambda _: log.info("jurisdiction.authenticated", jurisdiction=config.code))
        )

    def query_debts(
        self, config: JurisdictionConfig, session: SessionToken, tax_id: str
    ) -> Result[dict]:
        """POST {base_url}{query_path}; the raw payload is returned for normalization."""
        body = {"cnpj": tax_id, "tipo_consulta": DEBT_QUERY_TYPE, "incluir_detalhes": True}
        return (
            _send("POST", config.query_url, self._timeout, self._headers(bearer=session.token), body)
            .flat_map(_json_object)
            .peek(
                lambda _: log.info(
                    "jurisdiction.debts_queried", jurisdiction=config.code, tax_id=mask_tax_id(tax_id)
                )
            )
        )

    def issue_guide(
        self, config: JurisdictionConfig, session: SessionToken, request: GuideRequest
    ) -> Result[dict]:
        """POST {base_url}{guide_issuance_path} with the guide data."""
        body = {
            "cnpj": request.tax_id,
            "competencia": request.competence,
            "valor": str(request.amount),
            "tipo_tributo": request.tax_type,
            "codigo_receita": request.revenue_code,
            "data_vencimento": request.due_date.isoformat() if request.due_date else None,
        }
        return (
            _send("POST", config.guide_issuance_url, self._timeout, self._headers(bearer=session.token), body)
            .flat_map(_json_object)
            .peek(lambda _: log.info("jurisdiction.guide_issued", jurisdiction=config.code))
        )


class HttpProcurationPortal:
    """
    Client for the federal procuration portal.

    Implements the ProcurationPortal port:
    authenticate → open_procuration_form → submit_procuration → retrieve_proof.
    `proof_path` may contain a `{reference}` placeholder.
    """

    def __init__(
        self,
        base_url: str,
        auth_path: str = "/auth/certificado",
        form_path: str = "/procuracoes/formulario",
        submit_path: str = "/procuracoes",
        proof_path: str = "/procuracoes/{reference}/comprovante",
        timeout: float = 30,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_path = auth_path
        self._form_path = form_path
        self._submit_path = submit_path
        self._proof_path = proof_path
        self._timeout = timeout
        self._user_agent = user_agent
        self._clock = clock

    def _headers(self, session: PortalSession | None = None) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        if session is not None:
            headers["Authorization"] = f"Bearer {session.token}"
        return headers

    def authenticate(self, certificate: DigitalCertificate, client_id: str) -> Result[PortalSession]:
        url = f"{self._base_url}{self._auth_path}"
        body = {
            "certificado": certificate.encoded_payload,
            "senha_certificado": certificate.password,
            "cliente_id": client_id,
            "tipo_certificado": certificate.certificate_type.value,
        }
        return (
            _send("POST", url, self._timeout, self._headers(), body)
            .flat_map(_json_object)
            .flat_map(lambda data: _extract_token(data, url, self._clock()))
            .map(lambda remote: PortalSession(token=remote.token, expires_at=remote.expires_at))
            .peek(lambda _: log.info("portal.authenticated", client_id=client_id))
        )

    def open_procuration_form(self, session: PortalSession) -> Result[str]:
        """Open the new-procuration form; returns the form identifier the portal assigned."""
        url = f"{self._base_url}{self._form_path}"
        return (
            _send("GET", url, self._timeout, self._headers(session))
            .flat_map(_json_object)
            .map(lambda data: str(data.get("form_id") or data.get("formulario") or self._form_path))
        )

    def submit_procuration(self, session: PortalSession, grant: DelegationGrant) -> Result[str]:
        """Submit the grant; returns the procuration reference number."""
        url = f"{self._base_url}{self._submit_path}"
        body = {
            "cliente_id": grant.client_id,
            "procurador_cpf": grant.attorney_tax_id,
            "procurador_nome": grant.attorney_name,
            "servicos": sorted(grant.authorized_services),
            "data_validade": grant.valid_until.date().isoformat(),
        }

        def _reference(data: dict[str, Any]) -> Result[str]:
            reference = data.get("numero_procuracao") or data.get("protocolo")
            if not reference:
                return Result.failure(
                    ErrorCode.UPSTREAM_OPERATION_ERROR,
                    "Portal accepted the submission without a procuration number",
                    details={"stage": "decoding", "retryable": False},
                )
            return Result.success(str(reference))

        return (
            _send("POST", url, self._timeout, self._headers(session), body)
            .flat_map(_json_object)
            .flat_map(_reference)
            .peek(
                lambda reference: log.info(
                    "portal.procuration_submitted",
                    grant_id=str(grant.id),
                    grant_reference=reference,
                    attorney=mask_tax_id(grant.attorney_tax_id),
                )
            )
        )

    def retrieve_proof(self, session: PortalSession, grant_reference: str) -> Result[bytes]:
        url = f"{self._base_url}{self._proof_path.format(reference=grant_reference)}"
        return (
            _send("GET", url, self._timeout, self._headers(session))
            .map(lambda response: response.content)
            .ensure(
                lambda content: len(content) > 0,
                ErrorCode.UPSTREAM_OPERATION_ERROR,
                f"Portal returned an empty proof document for {grant_reference}",
            )
            .peek(lambda content: log.info("portal.proof_downloaded", size_bytes=len(content)))
        )
