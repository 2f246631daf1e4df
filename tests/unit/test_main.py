"""
Unit tests for the main module — composition root.

Tests verify structlog configuration, secret redaction and the wiring logic
without making real HTTP calls or database connections.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import structlog
from railway import ErrorCode
from railway.result import Result

from delegation_gateway import main as main_module
from delegation_gateway.config import AppSettings
from delegation_gateway.gateway import TaxGateway
from delegation_gateway.lifecycle import DelegationLifecycleManager
from delegation_gateway.main import build_services, configure_structlog, redact_secrets


def _settings(tmp_path: Path, **overrides) -> AppSettings:
    values = {
        "database": {"dsn": "postgresql://u:p@localhost:5432/gateway"},
        "portal": {"base_url": "https://portal.example"},
        "proof_store": {"directory": tmp_path},
        "jurisdiction_api_keys": {"sc": "k-1"},
    }
    values.update(overrides)
    return AppSettings(_env_file=None, **values)


class TestConfigureStructlog:
    """Verify structlog configuration function."""

    def test_configure_structlog_sets_log_level(self) -> None:
        """
        GIVEN log_level="WARNING"
        WHEN configure_structlog is called
        THEN structlog is configured (no exception raised).
        """
        configure_structlog("WARNING")
        assert structlog.get_logger() is not None

    def test_configure_structlog_invalid_level_falls_back(self) -> None:
        """
        GIVEN an invalid log_level string
        WHEN configure_structlog is called
        THEN it falls back to INFO (no crash).
        """
        configure_structlog("NONEXISTENT")
        assert structlog.get_logger() is not None


class TestRedactSecrets:
    def test_secret_keys_are_masked(self) -> None:
        """
        GIVEN a log event carrying a password, a token and a Portuguese key
        WHEN it passes through the processor
        THEN those values are replaced and the rest is untouched.
        """
        event = redact_secrets(
            None,
            "info",
            {"event": "auth.failed", "password": "p", "token": "t", "senha_portal": "s", "grant_id": "g"},
        )
        assert event == {
            "event": "auth.failed",
            "password": "***",
            "token": "***",
            "senha_portal": "***",
            "grant_id": "g",
        }


class TestBuildServices:
    def test_wires_every_service(self, tmp_path: Path) -> None:
        """
        GIVEN complete settings
        WHEN build_services is called
        THEN a Services bundle with a stopped scheduler is returned.
        """
        services = build_services(_settings(tmp_path))

        assert isinstance(services.lifecycle, DelegationLifecycleManager)
        assert isinstance(services.gateway, TaxGateway)
        assert len(services.registry) == 27
        assert not services.scheduler.running

    def test_schema_failure_aborts_startup(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            main_module,
            "apply_schema",
            MagicMock(return_value=Result.failure(ErrorCode.DATABASE_ERROR, "connection refused")),
        )
        settings = _settings(
            tmp_path,
            database={"dsn": "postgresql://u:p@localhost:5432/gateway", "apply_schema": True},
        )

        with pytest.raises(RuntimeError, match="connection refused"):
            build_services(settings)


class TestMain:
    def test_configuration_error_exits_with_status_1(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(main_module, "AppSettings", MagicMock(side_effect=ValueError("portal missing")))

        with pytest.raises(SystemExit) as excinfo:
            main_module.main()

        assert excinfo.value.code == 1
