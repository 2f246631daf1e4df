"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets (database password, state API keys) out of source control

All configuration errors surface when AppSettings is built, before any
adapter is created.

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var PORTAL__BASE_URL maps to portal.base_url, DATABASE__HOST maps to database.host,
and JURISDICTION_API_KEYS='{"SC": "..."}' fills the per-state API keys.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). The DSN takes priority when both
    are provided and is always available via `get_dsn()` after construction.
    """

    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")
    apply_schema: bool = Field(default=False, description="Create missing tables at startup")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """
        Ensure `dsn` is always populated.

        If DATABASE__DSN is not set, build the DSN from the individual
        component fields. Raises ValueError at startup if neither a full DSN
        nor all required components are provided.
        """
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError(
                "Set DATABASE__DSN or provide all of: "
                + ", ".join(missing)
            )
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        """Return the active database DSN as a plain string."""
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class PortalSettings(BaseModel):
    """Procuration portal where grants are registered and proofs downloaded."""

    base_url: str = Field(description="Portal API base URL")
    auth_path: str = Field(default="/auth/certificado")
    form_path: str = Field(default="/procuracoes/formulario")
    submit_path: str = Field(default="/procuracoes")
    proof_path: str = Field(
        default="/procuracoes/{reference}/comprovante",
        description="Proof download path; {reference} is replaced by the procuration number",
    )

    @field_validator("proof_path")
    @classmethod
    def validate_proof_path(cls, value: str) -> str:
        if "{reference}" not in value:
            raise ValueError(f"proof_path must contain a {{reference}} placeholder, got {value!r}")
        return value


class GatewaySettings(BaseModel):
    """Behaviour of grant selection, session brokering and remote calls."""

    candidate_limit: int = Field(default=5, ge=1, le=100)
    default_session_ttl_seconds: int = Field(default=300, ge=1)
    http_timeout_seconds: float = Field(default=30, gt=0)
    user_agent: str = Field(default="Sistema-Contabil-Integrado/1.0")
    audit_max_attempts: int = Field(default=10, ge=1)


class ProofStoreSettings(BaseModel):
    directory: Path = Field(default=Path("var/proofs"), description="Root directory for proof documents")


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables (Kubernetes ConfigMap / Secret)
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings
    portal: PortalSettings
    gateway: GatewaySettings = Field(default_factory=lambda: GatewaySettings())
    proof_store: ProofStoreSettings = Field(default_factory=lambda: ProofStoreSettings())
    jurisdiction_api_keys: dict[str, SecretStr] = Field(default_factory=dict)

    fallback_enabled: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    @field_validator("jurisdiction_api_keys")
    @classmethod
    def normalize_jurisdiction_codes(cls, value: dict[str, SecretStr]) -> dict[str, SecretStr]:
        return {code.strip().upper(): key for code, key in value.items()}

    def api_keys(self) -> dict[str, str]:
        """Plain-text API keys by jurisdiction code, for the authentication broker only."""
        return {code: key.get_secret_value() for code, key in self.jurisdiction_api_keys.items()}
