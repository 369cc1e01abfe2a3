"""Tests for run provenance."""

from __future__ import annotations

import logging
from datetime import UTC

import pytest

from brownfield.config import TenantConfig
from brownfield.errors import PlanRefused
from brownfield.provenance import (
    ENGINE_VERSION,
    ProvenanceLogger,
    RunProvenance,
    get_provenance_logger,
)


class TestRunProvenance:
    """Tests for the RunProvenance record."""

    def test_defaults(self) -> None:
        """A fresh record is unknown and error-free."""
        provenance = RunProvenance(command="plan")

        assert provenance.engine_version == ENGINE_VERSION
        assert provenance.outcome == "unknown"
        assert provenance.error is None
        assert provenance.timestamp.tzinfo == UTC

    def test_record_error(self) -> None:
        """Errors are stored with their type name."""
        provenance = RunProvenance(command="plan")
        provenance.record_error(PlanRefused([]))

        assert provenance.error_type == "PlanRefused"
        assert "Red conflict" in (provenance.error or "")

    def test_to_dict(self) -> None:
        """The dict form is JSON friendly."""
        provenance = RunProvenance(command="apply", plan_fingerprint="sha256:abc")

        data = provenance.to_dict()

        assert isinstance(data["timestamp"], str)
        assert data["plan_fingerprint"] == "sha256:abc"


class TestProvenanceLogger:
    """Tests for ProvenanceLogger."""

    def test_create_from_config(
        self, tenant_config: TenantConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Tenant and git details are filled in."""
        monkeypatch.setenv("GIT_COMMIT_SHA", "deadbeef")

        provenance = ProvenanceLogger().create_provenance("discover", tenant_config)

        assert provenance.tenant_id == tenant_config.tenant_id
        assert provenance.root_scope_id == "tenant-root"
        assert provenance.mode == "brownfield"
        assert provenance.git_commit_sha == "deadbeef"

    @pytest.mark.parametrize(
        ("outcome", "error", "level"),
        [
            ("succeeded", None, logging.INFO),
            ("refused", None, logging.WARNING),
            ("cancelled", None, logging.WARNING),
            ("failed", RuntimeError("boom"), logging.ERROR),
        ],
    )
    def test_log_level_follows_outcome(
        self,
        caplog: pytest.LogCaptureFixture,
        outcome: str,
        error: Exception | None,
        level: int,
    ) -> None:
        """Failures log at ERROR, refusals and cancellations at WARNING."""
        provenance = RunProvenance(command="apply", outcome=outcome)
        if error is not None:
            provenance.record_error(error)

        with caplog.at_level(logging.INFO, logger="brownfield.provenance"):
            ProvenanceLogger().log_provenance(provenance)

        (record,) = [r for r in caplog.records if r.getMessage() == "Run provenance"]
        assert record.levelno == level
        assert record.outcome == outcome

    def test_singleton(self) -> None:
        """get_provenance_logger returns one shared instance."""
        assert get_provenance_logger() is get_provenance_logger()
