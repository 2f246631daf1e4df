"""
Jurisdiction registry — data-driven configuration of the state tax authorities.

One JurisdictionConfig per UF: base URL, the three operation paths, whether
a certificate and an API key are required, and the permissions a grant must
authorize before the gateway will use it there. A single generic client
serves every entry, so adding a state means adding a row, not a code path.

An unknown code is a configuration error: `get` raises, `lookup` returns
Result.failure(CONFIGURATION_ERROR). There is no runtime fallback to a
default jurisdiction.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType

from railway import ErrorCode
from railway.result import Result

from delegation_gateway.domain.models import JurisdictionConfig, Permission

_BASE = frozenset({Permission.QUERY_DEBTS, Permission.QUERY_INVOICES})
_WITH_GUIDES = _BASE | {Permission.ISSUE_GUIDES}
_WITH_CONTEST = _WITH_GUIDES | {Permission.CONTEST_ASSESSMENTS}


class UnknownJurisdictionError(LookupError):
    """Raised when a jurisdiction code has no registry entry."""

    def __init__(self, code: str) -> None:
        super().__init__(f"No configuration registered for jurisdiction {code!r}")
        self.code = code


def _uf(
    code: str,
    base_url: str,
    auth_path: str,
    query_path: str,
    guide_path: str,
    required: frozenset[str] = _BASE,
    requires_api_key: bool = False,
) -> JurisdictionConfig:
    return JurisdictionConfig(
        code=code,
        base_url=base_url,
        auth_path=auth_path,
        query_path=query_path,
        guide_issuance_path=guide_path,
        requires_certificate=True,
        requires_api_key=requires_api_key,
        required_permissions=frozenset(required),
    )


# fmt: off
STATE_TAX_AUTHORITIES: tuple[JurisdictionConfig, ...] = (
    _uf("AC", "https://www.sefaz.ac.gov.br/api", "/auth/digital", "/servicos/consultas", "/servicos/guias"),
    _uf("AL", "https://www.sefaz.al.gov.br/api", "/oauth/certificado", "/nfe/consultas", "/dar/gerar"),
    _uf("AM", "https://www.sefaz.am.gov.br/api", "/auth/digital", "/servicos/consultas", "/servicos/dar"),
    _uf("AP", "https://www.sefaz.ap.gov.br/api", "/oauth/token", "/nfe/consultas", "/dar/emissao"),
    _uf("BA", "https://www.sefaz.ba.gov.br/api", "/oauth/certificado", "/nfe/consultas", "/dar/gerar", _WITH_GUIDES),
    _uf("CE", "https://www.sefaz.ce.gov.br/api", "/auth/digital", "/servicos/consultas", "/servicos/dar"),
    _uf("DF", "https://www.fazenda.df.gov.br/api", "/auth/certificado", "/consultas/situacao", "/guias/gerar"),
    _uf("ES", "https://internet.sefaz.es.gov.br/api", "/auth/token", "/consultas/nfe", "/guias/dar"),
    _uf("GO", "https://www.sefaz.go.gov.br/api", "/auth/token", "/consultas/debitos", "/guias/icms"),
    _uf("MA", "https://www.sefaz.ma.gov.br/api", "/oauth/certificado", "/nfe/consultas", "/dar/gerar"),
    _uf("MG", "https://www.fazenda.mg.gov.br/api", "/autenticacao", "/consultas/situacao-fiscal", "/pagamentos/guias", _WITH_CONTEST),
    _uf("MS", "https://www.sefaz.ms.gov.br/api", "/auth/digital", "/servicos/consultas", "/servicos/guias"),
    _uf("MT", "https://www.sefaz.mt.gov.br/api", "/oauth/token", "/nfe/consultas", "/dar/emitir"),
    _uf("PA", "https://www.sefa.pa.gov.br/api", "/oauth/certificado", "/nfe/consultas", "/dar/gerar"),
    _uf("PB", "https://www.sefaz.pb.gov.br/api", "/auth/certificado", "/consultas/situacao", "/guias/gerar"),
    _uf("PE", "https://www.sefaz.pe.gov.br/api", "/auth/digital", "/servicos/consultas", "/servicos/guias"),
    _uf("PI", "https://www.sefaz.pi.gov.br/api", "/auth/token", "/consultas/nfe", "/dar/emitir"),
    _uf("PR", "https://www.fazenda.pr.gov.br/api", "/auth/digital", "/servicos/consultas", "/servicos/dar", _WITH_GUIDES),
    _uf("RJ", "https://www.fazenda.rj.gov.br/api", "/oauth/token", "/servicos/consultas", "/servicos/guias", _WITH_GUIDES),
    _uf("RN", "https://www.set.rn.gov.br/api", "/oauth/token", "/nfe/consultas", "/dar/emissao"),
    _uf("RO", "https://www.sefin.ro.gov.br/api", "/auth/certificado", "/consultas/situacao", "/guias/icms"),
    _uf("RR", "https://www.sefaz.rr.gov.br/api", "/auth/token", "/consultas/debitos", "/guias/emitir"),
    _uf("RS", "https://www.sefaz.rs.gov.br/api", "/auth/certificado", "/nfe/consultas", "/dar/emissao", _WITH_GUIDES),
    _uf("SC", "https://servicos.fazenda.sc.gov.br/api", "/serpro/integra/auth", "/serpro/integra/consultas", "/serpro/integra/guias", requires_api_key=True),
    _uf("SE", "https://www.sefaz.se.gov.br/api", "/auth/token", "/consultas/debitos", "/guias/emitir"),
    _uf("SP", "https://www.fazenda.sp.gov.br/api", "/auth/token", "/consultas/debitos", "/guias/emissao", _WITH_GUIDES),
    _uf("TO", "https://www.sefaz.to.gov.br/api", "/auth/token", "/consultas/nfe", "/dar/emissao"),
)
# fmt: on


class JurisdictionRegistry:
    """
    Immutable O(1) lookup table from jurisdiction code to configuration.

    Build with `JurisdictionRegistry.default()` for the 27 state authorities,
    or from any iterable of configs for other deployments and tests.
    """

    def __init__(self, configs: Mapping[str, JurisdictionConfig] | tuple[JurisdictionConfig, ...]) -> None:
        entries = configs.values() if isinstance(configs, Mapping) else configs
        table: dict[str, JurisdictionConfig] = {}
        for config in entries:
            code = config.code.upper()
            if code in table:
                raise ValueError(f"Duplicate jurisdiction code: {code}")
            table[code] = config
        self._table = MappingProxyType(table)

    @classmethod
    def default(cls) -> JurisdictionRegistry:
        return cls(STATE_TAX_AUTHORITIES)

    def get(self, code: str) -> JurisdictionConfig:
        """Return the config for `code` or raise UnknownJurisdictionError."""
        try:
            return self._table[code.upper()]
        except KeyError:
            raise UnknownJurisdictionError(code) from None

    def lookup(self, code: str) -> Result[JurisdictionConfig]:
        """Result-returning variant of `get`, for use inside railway chains."""
        config = self._table.get(code.upper())
        if config is None:
            return Result.failure(
                ErrorCode.CONFIGURATION_ERROR,
                f"Unknown jurisdiction code: {code!r}",
                details={"jurisdiction_code": code},
            )
        return Result.success(config)

    def required_permissions(self, code: str) -> frozenset[str]:
        return self.get(code).required_permissions

    @property
    def codes(self) -> frozenset[str]:
        return frozenset(self._table)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.upper() in self._table

    def __iter__(self) -> Iterator[JurisdictionConfig]:
        return iter(self._table.values())

    def __len__(self) -> int:
        return len(self._table)
