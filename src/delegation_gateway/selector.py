"""
GrantSelector — picks the grant the gateway will act under.

    jurisdiction given and unknown    → CONFIGURATION_ERROR
    candidates = ISSUED ∧ valid_until > now, newest validity first, capped
      ├─ none                         → NO_VALID_DELEGATION
      ├─ no jurisdiction requested    → first candidate
      ├─ first candidate whose authorized_services ⊇ required → it
      └─ none qualifies               → INSUFFICIENT_SCOPE

Expiry is derived, never stored, so candidates coming back from the
repository are filtered again with `DelegationGrant.is_usable(now)`.
Read-only: nothing here writes to storage or to the audit log.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result

from delegation_gateway.domain.models import Availability, DelegationGrant, GrantStatus
from delegation_gateway.domain.ports import DelegationRepository
from delegation_gateway.jurisdictions import JurisdictionRegistry

log = structlog.get_logger()

DEFAULT_CANDIDATE_LIMIT = 5


def _utc_now() -> datetime:
    return datetime.now(UTC)


class GrantSelector:
    def __init__(
        self,
        repository: DelegationRepository,
        registry: JurisdictionRegistry,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._candidate_limit = candidate_limit
        self._clock = clock

    def find_valid_grant(
        self,
        client_id: str,
        jurisdiction_code: str | None = None,
        required_permissions: frozenset[str] | None = None,
    ) -> Result[DelegationGrant]:
        """
        Return the grant to use for `client_id`, optionally scoped to a jurisdiction.

        `required_permissions` overrides the jurisdiction's own requirement; it is
        only consulted when a jurisdiction is given.
        """
        now = self._clock()
        return (
            self._required(jurisdiction_code, required_permissions)
            .flat_map(
                lambda required: self._candidates(client_id, now)
                .flat_map(lambda grants: self._require_any(client_id, grants))
                .flat_map(lambda grants: self._pick_in_scope(grants, jurisdiction_code, required))
            )
            .peek(
                lambda grant: log.debug(
                    "selector.grant_selected",
                    client_id=client_id,
                    jurisdiction=jurisdiction_code,
                    grant_id=str(grant.id),
                )
            )
        )

    def select_valid_grant(
        self,
        client_id: str,
        jurisdiction_code: str | None = None,
        required_permissions: frozenset[str] | None = None,
    ) -> Result[UUID]:
        return self.find_valid_grant(client_id, jurisdiction_code, required_permissions).map(
            lambda grant: grant.id
        )

    def has_valid_grant(self, client_id: str, jurisdiction_code: str) -> Result[Availability]:
        """
        Report whether the client can currently reach `jurisdiction_code`.

        Missing or out-of-scope delegations are a normal answer here, not a failure;
        configuration and storage problems still fail.
        """
        code = jurisdiction_code.upper()
        result = self.find_valid_grant(client_id, code)
        if result.is_success():
            grant = result.value()
            return Result.success(
                Availability(
                    client_id=client_id,
                    jurisdiction_code=code,
                    available=True,
                    message=f"Procuration valid until {grant.valid_until.date().isoformat()}",
                    grant_id=grant.id,
                )
            )
        if result.error().code.is_fallback_eligible:
            return Result.success(
                Availability(
                    client_id=client_id,
                    jurisdiction_code=code,
                    available=False,
                    message=result.error().message,
                )
            )
        return Result.failure_from(result.error())

    # ──────────────────────── steps ────────────────────────

    def _candidates(self, client_id: str, now: datetime) -> Result[list[DelegationGrant]]:
        return (
            self._repository.find_by_client(
                client_id,
                status=GrantStatus.ISSUED,
                valid_after=now,
                limit=self._candidate_limit,
            )
            .map_failure(_as_database_failure)
            .map(lambda grants: [g for g in grants if g.is_usable(now)])
        )

    @staticmethod
    def _require_any(client_id: str, grants: list[DelegationGrant]) -> Result[list[DelegationGrant]]:
        if not grants:
            return Result.failure(
                ErrorCode.NO_VALID_DELEGATION,
                f"No valid procuration found for client {client_id}",
                details={"client_id": client_id},
            )
        return Result.success(grants)

    def _required(
        self, jurisdiction_code: str | None, override: frozenset[str] | None
    ) -> Result[frozenset[str]]:
        """Permissions a candidate must carry; empty when no jurisdiction is requested."""
        if jurisdiction_code is None:
            return Result.success(frozenset())
        return self._registry.lookup(jurisdiction_code).map(
            lambda config: override if override is not None else config.required_permissions
        )

    @staticmethod
    def _pick_in_scope(
        grants: list[DelegationGrant],
        jurisdiction_code: str | None,
        required: frozenset[str],
    ) -> Result[DelegationGrant]:
        for grant in grants:
            if grant.authorizes(required):
                return Result.success(grant)
        code = (jurisdiction_code or "").upper()
        return Result.failure(
            ErrorCode.INSUFFICIENT_SCOPE,
            f"No valid procuration authorizes {', '.join(sorted(required))} for jurisdiction {code}",
            details={"jurisdiction_code": code, "required_permissions": sorted(required)},
        )


def _as_database_failure(err: FailureDescription) -> FailureDescription:
    if err.code is ErrorCode.DATABASE_ERROR:
        return err
    return FailureDescription.create(
        ErrorCode.DATABASE_ERROR, f"Could not load grants: {err.message}", err.exception
    )
