"""
Normalization — maps heterogeneous state payloads onto DebtQueryResult and
IssuedGuide.

Each state names its fields differently (`competencia` / `periodo`,
`valor_total` / `valor`, ...). The alias tables below list every spelling
accepted, first match wins. Amounts arrive as numbers or as Brazilian
formatted strings ("R$ 1.234,56").

Anything that cannot be mapped is an UPSTREAM_OPERATION_ERROR with
`details["stage"] == "normalization"`: the remote call succeeded but its
answer is unusable.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from railway import ErrorCode
from railway.result import Result

from delegation_gateway.domain.models import DebtEntry, DebtQueryResult, IssuedGuide

COMPETENCE_KEYS = ("competencia", "periodo", "competence")
AMOUNT_KEYS = ("valor_total", "valor", "amount")
DUE_DATE_KEYS = ("data_vencimento", "vencimento", "due_date")
STATUS_KEYS = ("situacao", "status")
DOCUMENT_KEYS = ("numero_documento", "codigo_debito")
TAX_TYPE_KEYS = ("tipo_tributo", "imposto")
REVENUE_CODE_KEYS = ("codigo_receita",)

DEFAULT_DEBT_STATUS = "Pendente"


class NormalizationError(ValueError):
    """A remote field is present but cannot be interpreted."""


def _first(entry: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_amount(value: Any) -> Decimal:
    """
    Parse a monetary amount.

    >>> parse_amount("R$ 1.234,56")
    Decimal('1234.56')
    >>> parse_amount(99.9)
    Decimal('99.9')
    """
    if isinstance(value, bool):
        raise NormalizationError(f"Invalid amount: {value!r}")
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        text = value.replace("R$", "").replace(" ", "").strip()
        if "," in text:
            text = text.replace(".", "").replace(",", ".")
        try:
            return Decimal(text)
        except InvalidOperation as e:
            raise NormalizationError(f"Invalid amount: {value!r}") from e
    raise NormalizationError(f"Invalid amount: {value!r}")


def parse_date(value: Any) -> date | None:
    """Accept ISO dates/datetimes and the dd/mm/yyyy form."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if "/" in text:
            return datetime.strptime(text, "%d/%m/%Y").date()
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise NormalizationError(f"Invalid date: {value!r}") from e


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def normalize_debt_entry(entry: Mapping[str, Any]) -> DebtEntry:
    if not isinstance(entry, Mapping):
        raise NormalizationError(f"Debt entry must be an object, got {type(entry).__name__}")
    competence = _first(entry, COMPETENCE_KEYS)
    amount = _first(entry, AMOUNT_KEYS)
    if competence is None:
        raise NormalizationError("Debt entry has no competence")
    if amount is None:
        raise NormalizationError(f"Debt entry {competence} has no amount")
    return DebtEntry(
        competence=str(competence),
        amount=parse_amount(amount),
        due_date=parse_date(_first(entry, DUE_DATE_KEYS)),
        status=str(_first(entry, STATUS_KEYS) or DEFAULT_DEBT_STATUS),
        document_number=_optional_str(_first(entry, DOCUMENT_KEYS)),
        tax_type=_optional_str(_first(entry, TAX_TYPE_KEYS)),
        revenue_code=_optional_str(_first(entry, REVENUE_CODE_KEYS)),
    )


def _normalization_failure(jurisdiction_code: str, message: str, e: Exception | None = None) -> Result[Any]:
    return Result.failure(
        ErrorCode.UPSTREAM_OPERATION_ERROR,
        f"Unusable response from jurisdiction {jurisdiction_code}: {message}",
        e,
        details={"stage": "normalization", "jurisdiction_code": jurisdiction_code, "retryable": False},
    )


def normalize_debts(
    jurisdiction_code: str,
    tax_id: str,
    payload: Mapping[str, Any],
    queried_at: datetime,
) -> Result[DebtQueryResult]:
    """Build a DebtQueryResult from a `{"debitos": [...]}` payload."""
    raw = payload.get("debitos") if isinstance(payload, Mapping) else None
    if not isinstance(raw, list):
        return _normalization_failure(jurisdiction_code, "missing 'debitos' list")
    try:
        debts = tuple(normalize_debt_entry(entry) for entry in raw)
    except NormalizationError as e:
        return _normalization_failure(jurisdiction_code, str(e), e)
    return Result.success(
        DebtQueryResult(
            jurisdiction_code=jurisdiction_code,
            tax_id=tax_id,
            debts=debts,
            queried_at=queried_at,
        )
    )


def normalize_guide(jurisdiction_code: str, payload: Mapping[str, Any]) -> Result[IssuedGuide]:
    """Build an IssuedGuide; `numero_guia` is the only mandatory field."""
    if not isinstance(payload, Mapping) or not payload.get("numero_guia"):
        return _normalization_failure(jurisdiction_code, "missing 'numero_guia'")
    try:
        amount = payload.get("valor")
        return Result.success(
            IssuedGuide(
                jurisdiction_code=jurisdiction_code,
                guide_number=str(payload["numero_guia"]),
                barcode=_optional_str(payload.get("codigo_barras")),
                digitable_line=_optional_str(payload.get("linha_digitavel")),
                due_date=parse_date(payload.get("data_vencimento")),
                document_url=_optional_str(payload.get("url_pdf")),
                amount=parse_amount(amount) if amount is not None else None,
            )
        )
    except NormalizationError as e:
        return _normalization_failure(jurisdiction_code, str(e), e)
