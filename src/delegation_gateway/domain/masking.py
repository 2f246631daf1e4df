"""
Masking of sensitive values before they reach an audit event or a log line.

Tax ids keep their first three digits (`123***`), secrets are replaced
entirely. Masking is applied by whoever builds the event; the AuditTrail
stores what it receives.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

MASK = "***"

SECRET_KEYS = frozenset(
    {
        "password",
        "certificate_password",
        "senha",
        "senha_certificado",
        "token",
        "access_token",
        "api_key",
        "encoded_payload",
        "certificate_payload",
        "certificado",
    }
)
TAX_ID_KEYS = frozenset(
    {"tax_id", "attorney_tax_id", "cpf", "cnpj", "procurador_cpf", "client_tax_id"}
)

_NON_DIGITS = re.compile(r"\D")


def only_digits(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def mask_tax_id(value: str | None) -> str:
    """Keep the first three digits of a CPF/CNPJ and hide the rest."""
    if not value:
        return MASK
    digits = only_digits(value)
    return f"{digits[:3]}{MASK}" if len(digits) > 3 else MASK


def mask_secret(_: Any) -> str:
    return MASK


def mask_details(details: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of `details` with secrets and tax ids masked, recursively."""
    masked: dict[str, Any] = {}
    for key, value in (details or {}).items():
        lowered = key.lower()
        if lowered in SECRET_KEYS:
            masked[key] = mask_secret(value)
        elif lowered in TAX_ID_KEYS:
            masked[key] = mask_tax_id(str(value) if value is not None else None)
        else:
            masked[key] = _mask_nested(value)
    return masked


def _mask_nested(value: Any) -> Any:
    if isinstance(value, Mapping):
        return mask_details(value)
    if isinstance(value, list):
        return [_mask_nested(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_mask_nested(item) for item in value)
    return value
