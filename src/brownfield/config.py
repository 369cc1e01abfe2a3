"""Tenant configuration with validation.

The configuration is an immutable value passed explicitly into the collector,
loader and executor. There is no process-wide singleton, so several tenants can
be reconciled in one process (tests do exactly that).

The platform mode is the only switch that changes destructive behavior and is
always taken from configuration, never inferred from what a scan found.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class PlatformMode(str, Enum):
    """How unmanaged resources are treated when they leave the plan."""

    GREENFIELD = "greenfield"  # DeleteAll
    BROWNFIELD = "brownfield"  # DetachAll


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONTROL_PLANE_TIMEOUT_SECONDS = 120
MIN_CONTROL_PLANE_TIMEOUT_SECONDS = 5
MAX_CONTROL_PLANE_TIMEOUT_SECONDS = 1800

# Incremental backoff: attempt N waits N * BACKOFF seconds
DEFAULT_MAX_ATTEMPTS = 10
MAX_ATTEMPTS_LIMIT = 50
DEFAULT_BACKOFF_SECONDS = 10
MAX_BACKOFF_SECONDS = 300

# Pagination guard - exceeding it is an error, never a silent truncation
DEFAULT_MAX_LIST_PAGES = 10_000

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 5 * 1024 * 1024
MAX_PLAN_FILE_SIZE_BYTES = 20 * 1024 * 1024
MAX_PLATFORM_FILE_SIZE_BYTES = 1024 * 1024

# Input validation patterns
VALID_TENANT_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_SCOPE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._()-]{0,89}$"


@dataclass(frozen=True)
class TenantConfig:
    """Reconciliation settings for one tenant.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    tenant_id: str
    root_scope_id: str

    mode: PlatformMode = PlatformMode.BROWNFIELD

    # Timing
    control_plane_timeout_seconds: int = DEFAULT_CONTROL_PLANE_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: int = DEFAULT_BACKOFF_SECONDS

    # Inventory
    max_list_pages: int = DEFAULT_MAX_LIST_PAGES

    # Where ExecutionRecords are flushed
    state_dir: Path = field(default_factory=lambda: Path(".brownfield-state"))

    # Only needed by the Azure adapter (generic by-ID client)
    subscription_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.tenant_id:
            errors.append("TENANT_ID is required")
        elif not re.match(VALID_TENANT_ID_PATTERN, self.tenant_id.lower()):
            errors.append(f"TENANT_ID must be a valid GUID: {self.tenant_id}")

        if not self.root_scope_id:
            errors.append("ROOT_MANAGEMENT_GROUP_ID is required")
        elif not re.match(VALID_SCOPE_ID_PATTERN, self.root_scope_id):
            errors.append(
                f"ROOT_MANAGEMENT_GROUP_ID must match {VALID_SCOPE_ID_PATTERN}: "
                f"{self.root_scope_id}"
            )

        if not isinstance(self.mode, PlatformMode):
            errors.append(f"PLATFORM_MODE must be a PlatformMode: {self.mode!r}")

        if not (
            MIN_CONTROL_PLANE_TIMEOUT_SECONDS
            <= self.control_plane_timeout_seconds
            <= MAX_CONTROL_PLANE_TIMEOUT_SECONDS
        ):
            errors.append(
                f"CONTROL_PLANE_TIMEOUT must be between {MIN_CONTROL_PLANE_TIMEOUT_SECONDS} "
                f"and {MAX_CONTROL_PLANE_TIMEOUT_SECONDS} seconds"
            )

        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT:
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if not 0 <= self.backoff_seconds <= MAX_BACKOFF_SECONDS:
            errors.append(f"BACKOFF_SECONDS must be between 0 and {MAX_BACKOFF_SECONDS}")

        if self.max_list_pages < 1:
            errors.append("MAX_LIST_PAGES must be at least 1")

        if self.subscription_id and not re.match(
            VALID_TENANT_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> TenantConfig:
        """Load configuration from environment variables.

        Environment Variables:
            TENANT_ID: Entra ID tenant (GUID)
            ROOT_MANAGEMENT_GROUP_ID: Scope root to collect from
            PLATFORM_MODE: greenfield or brownfield (default: brownfield)
            CONTROL_PLANE_TIMEOUT: Per-call timeout in seconds (default: 120)
            MAX_ATTEMPTS: Attempts per plan step (default: 10)
            BACKOFF_SECONDS: Incremental backoff step (default: 10)
            MAX_LIST_PAGES: Pagination guard per list call (default: 10000)
            STATE_DIR: Directory for execution records (default: .brownfield-state)
            AZURE_SUBSCRIPTION_ID: Subscription for the Azure client (optional)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            tenant_id=os.environ.get("TENANT_ID", ""),
            root_scope_id=os.environ.get("ROOT_MANAGEMENT_GROUP_ID", ""),
            mode=parse_mode(os.environ.get("PLATFORM_MODE")),
            control_plane_timeout_seconds=get_int(
                "CONTROL_PLANE_TIMEOUT", DEFAULT_CONTROL_PLANE_TIMEOUT_SECONDS
            ),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_seconds=get_int("BACKOFF_SECONDS", DEFAULT_BACKOFF_SECONDS),
            max_list_pages=get_int("MAX_LIST_PAGES", DEFAULT_MAX_LIST_PAGES),
            state_dir=Path(os.environ.get("STATE_DIR", ".brownfield-state")),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
        )

    @classmethod
    def from_file(cls, path: Path) -> TenantConfig:
        """Load configuration from a platform.json file.

        Expected keys: tenantId, rootManagementGroupId, platformMode and the
        optional controlPlaneTimeout, maxAttempts, backoffSeconds,
        maxListPages, stateDir, subscriptionId.
        """
        if not path.exists():
            raise ConfigurationError(f"Platform file not found: {path}")
        if path.stat().st_size > MAX_PLATFORM_FILE_SIZE_BYTES:
            raise ConfigurationError(
                f"Platform file exceeds maximum size of {MAX_PLATFORM_FILE_SIZE_BYTES} bytes"
            )
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read platform file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Platform file must contain a JSON object: {path}")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> TenantConfig:
        """Build configuration from a camelCase mapping."""
        try:
            return cls(
                tenant_id=str(data.get("tenantId", "")),
                root_scope_id=str(data.get("rootManagementGroupId", "")),
                mode=parse_mode(data.get("platformMode")),
                control_plane_timeout_seconds=int(
                    data.get("controlPlaneTimeout", DEFAULT_CONTROL_PLANE_TIMEOUT_SECONDS)
                ),
                max_attempts=int(data.get("maxAttempts", DEFAULT_MAX_ATTEMPTS)),
                backoff_seconds=int(data.get("backoffSeconds", DEFAULT_BACKOFF_SECONDS)),
                max_list_pages=int(data.get("maxListPages", DEFAULT_MAX_LIST_PAGES)),
                state_dir=Path(data.get("stateDir", ".brownfield-state")),
                subscription_id=data.get("subscriptionId") or None,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid platform configuration value: {e}") from e

    def with_mode(self, mode: PlatformMode) -> TenantConfig:
        """Return a copy with an explicitly chosen platform mode."""
        return TenantConfig(
            tenant_id=self.tenant_id,
            root_scope_id=self.root_scope_id,
            mode=mode,
            control_plane_timeout_seconds=self.control_plane_timeout_seconds,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            max_list_pages=self.max_list_pages,
            state_dir=self.state_dir,
            subscription_id=self.subscription_id,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff_seconds=self.backoff_seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with incremental backoff.

    Attempt N (1-based) that fails transiently waits ``N * backoff_seconds``
    before attempt N + 1. The policy is a value; sleeping is done by the caller
    so tests can substitute a no-op sleep.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return float(attempt) * self.backoff_seconds


def parse_mode(value: str | None) -> PlatformMode:
    """Parse a platform mode string, defaulting to brownfield."""
    if not value:
        return PlatformMode.BROWNFIELD
    try:
        return PlatformMode(value.lower())
    except ValueError as e:
        valid = [m.value for m in PlatformMode]
        raise ConfigurationError(f"PLATFORM_MODE must be one of {valid}: {value}") from e
