"""Run provenance for audit.

Every discover, plan and apply run emits one structured provenance record:
which manifest (by hash), which plan (by fingerprint), which engine version and
git revision, and what the run concluded. The record is the audit trail that
ties a change in the tenant back to a reviewed plan artifact.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import TenantConfig

logger = logging.getLogger(__name__)

# Set at build time; "dev" for local runs
ENGINE_VERSION = os.environ.get("ENGINE_VERSION", "dev")


@dataclass
class RunProvenance:
    """Provenance record for one CLI run."""

    command: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    engine_version: str = ENGINE_VERSION
    instance_id: str = ""

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""
    manifest_hash: str = ""
    plan_fingerprint: str = ""

    # Tenant
    tenant_id: str = ""
    root_scope_id: str = ""
    mode: str = ""

    # Outcome
    severity_counts: dict[str, int] = field(default_factory=dict)
    step_counts: dict[str, int] = field(default_factory=dict)
    outcome: str = "unknown"
    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None

    def record_error(self, error: BaseException) -> None:
        self.error = str(error)
        self.error_type = type(error).__name__

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Creates and logs RunProvenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(self, command: str, config: TenantConfig) -> RunProvenance:
        return RunProvenance(
            command=command,
            instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            tenant_id=config.tenant_id,
            root_scope_id=config.root_scope_id,
            mode=config.mode.value,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed record; level follows the outcome."""
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.outcome in ("refused", "cancelled"):
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                "command": provenance.command,
                "outcome": provenance.outcome,
                "mode": provenance.mode,
                "plan_fingerprint": provenance.plan_fingerprint,
                "git_commit": provenance.git_commit_sha,
                "engine_version": provenance.engine_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
