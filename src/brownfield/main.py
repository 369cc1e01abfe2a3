"""Phase orchestration and process setup for the reconciliation engine.

PHASES:
  discover: Collector + Loader (concurrently) -> Classifier
  plan:     discover -> Planner
  apply:    plan artifact -> Executor

Phases pass their outputs explicitly; nothing is shared through globals.
``discover`` and ``plan`` never mutate the tenant.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .classifier import ConflictClassifier
from .config import TenantConfig
from .control_plane import ControlPlane
from .execution_store import ExecutionStore, JsonFileExecutionStore
from .executor import ExecutionResult, Executor
from .inventory import InventoryCollector
from .manifest import load_manifest
from .models import (
    ClassificationResult,
    DesiredSet,
    InventorySnapshot,
    OperatorOverride,
    ReconciliationPlan,
)
from .planner import ReconciliationPlanner
from .rules import ConflictRuleTable
from .scope_tree import ScopeTree

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# LogRecord attributes that are not user-supplied ``extra`` fields
_STANDARD_RECORD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


_log_handler: logging.Handler | None = None


def setup_logging(log_format: str = "json", level: int = logging.INFO) -> None:
    """Configure structured logging on stderr.

    stdout carries the reports, so log lines never interleave with JSON output.
    Calling this again replaces the handler it installed before.
    """
    global _log_handler

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    if _log_handler is not None:
        root_logger.removeHandler(_log_handler)
    root_logger.addHandler(handler)
    _log_handler = handler
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@dataclass
class Discovery:
    """Outputs of the discover phase."""

    snapshot: InventorySnapshot
    desired: DesiredSet
    classification: ClassificationResult


async def discover(
    control_plane: ControlPlane,
    config: TenantConfig,
    manifest_path: Path,
    *,
    rules: ConflictRuleTable | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Discovery:
    """Collect and load concurrently, then classify.

    Raises:
        CollectionError: Collection failed.
        ManifestError: The manifest is unusable.
        ClassificationInvariantViolation: Inputs violate snapshot invariants.
    """
    collector = InventoryCollector(control_plane, config, sleep=sleep)
    snapshot, desired = await asyncio.gather(
        collector.collect(),
        asyncio.to_thread(load_manifest, manifest_path),
    )
    classification = ConflictClassifier(rules).classify(snapshot, desired)
    return Discovery(snapshot=snapshot, desired=desired, classification=classification)


def build_plan(
    discovery: Discovery,
    config: TenantConfig,
    overrides: Iterable[OperatorOverride] = (),
) -> ReconciliationPlan:
    """Plan from a discovery. Raises PlanRefused on unresolved Red conflicts."""
    scopes = ScopeTree.merged(discovery.snapshot.scopes, discovery.desired.scopes).with_children()
    return ReconciliationPlanner().plan(
        discovery.classification.conflicts,
        discovery.classification.to_create,
        config.mode,
        overrides,
        scopes,
    )


async def apply(
    control_plane: ControlPlane,
    config: TenantConfig,
    plan: ReconciliationPlan,
    *,
    store: ExecutionStore | None = None,
    sleep: Sleep = asyncio.sleep,
    handle_signals: bool = True,
) -> ExecutionResult:
    """Execute a plan. SIGINT and SIGTERM cancel the run instead of killing it."""
    if plan.mode != config.mode:
        logger.warning(
            "Plan mode differs from configured mode; the plan's mode is used",
            extra={"plan_mode": plan.mode.value, "config_mode": config.mode.value},
        )

    executor = Executor(
        control_plane,
        store or JsonFileExecutionStore(config.state_dir),
        retry_policy=config.retry_policy(),
        timeout_seconds=config.control_plane_timeout_seconds,
        sleep=sleep,
    )

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        executor.cancel()

    if handle_signals:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.warning("Signal handler unavailable", extra={"signal": sig.name})

    try:
        return await executor.run(plan)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
