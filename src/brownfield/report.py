"""Report emitter.

Pure serialization of classification results, plans and execution results:
- JSON documents for CI and for the plan artifact consumed by ``apply``
- Colorized human summaries built with ``click.style``

The plan artifact round-trips losslessly; reading it back recomputes the
fingerprint and rejects an artifact that was edited after planning.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from .config import MAX_PLAN_FILE_SIZE_BYTES
from .errors import PlanArtifactError
from .executor import ExecutionResult, RunStatus
from .models import (
    ClassificationResult,
    Conflict,
    ReconciliationPlan,
    Severity,
    StepOperation,
    StepStatus,
)
from .planner import compute_fingerprint

logger = logging.getLogger(__name__)

PLAN_ARTIFACT_VERSION = 1

SEVERITY_COLORS = {
    Severity.GREEN: "green",
    Severity.YELLOW: "yellow",
    Severity.RED: "red",
}

OPERATION_COLORS = {
    StepOperation.CREATE: "green",
    StepOperation.UPDATE: "yellow",
    StepOperation.ADOPT: "cyan",
    StepOperation.DETACH: "magenta",
    StepOperation.DELETE: "red",
}

STATUS_COLORS = {
    StepStatus.SUCCEEDED: "green",
    StepStatus.FAILED: "red",
    StepStatus.CANCELLED: "yellow",
    StepStatus.PENDING: "white",
    StepStatus.IN_PROGRESS: "cyan",
}


# =============================================================================
# JSON
# =============================================================================


def classification_to_dict(result: ClassificationResult) -> dict[str, Any]:
    return {
        "summary": {
            "severityCounts": result.count_by_severity(),
            "toCreate": len(result.to_create),
            "conflicts": len(result.conflicts),
        },
        **result.model_dump(mode="json", by_alias=True),
    }


def classification_to_json(result: ClassificationResult) -> str:
    return json.dumps(classification_to_dict(result), indent=2, sort_keys=True)


def plan_to_json(plan: ReconciliationPlan) -> str:
    document = {
        "version": PLAN_ARTIFACT_VERSION,
        "plan": plan.model_dump(mode="json", by_alias=True),
    }
    return json.dumps(document, indent=2, sort_keys=True)


def plan_from_json(content: str, source: str = "<string>") -> ReconciliationPlan:
    """Parse a plan artifact.

    Raises:
        PlanArtifactError: If the artifact is malformed, of an unknown version,
            or its fingerprint does not match its content.
    """
    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise PlanArtifactError(f"Invalid JSON in plan artifact {source}: {e}") from e

    if not isinstance(document, dict) or "plan" not in document:
        raise PlanArtifactError(f"Plan artifact {source} has no 'plan' document")
    if document.get("version") != PLAN_ARTIFACT_VERSION:
        raise PlanArtifactError(
            f"Unsupported plan artifact version in {source}: {document.get('version')}"
        )

    try:
        plan = ReconciliationPlan.model_validate(document["plan"])
    except ValidationError as e:
        raise PlanArtifactError(f"Invalid plan artifact {source}: {e}") from e

    expected = compute_fingerprint(plan)
    if plan.fingerprint != expected:
        raise PlanArtifactError(
            f"Plan artifact {source} was modified after planning "
            f"(fingerprint {plan.fingerprint or '<none>'}, content {expected})"
        )
    return plan


def read_plan_artifact(path: Path) -> ReconciliationPlan:
    if not path.exists():
        raise PlanArtifactError(f"Plan artifact not found: {path}")
    if path.stat().st_size > MAX_PLAN_FILE_SIZE_BYTES:
        raise PlanArtifactError(
            f"Plan artifact exceeds maximum size of {MAX_PLAN_FILE_SIZE_BYTES} bytes"
        )
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanArtifactError(f"Cannot read plan artifact {path}: {e}") from e
    return plan_from_json(content, str(path))


def write_plan_artifact(plan: ReconciliationPlan, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(plan_to_json(plan) + "\n", encoding="utf-8")
    logger.info(
        "Plan artifact written",
        extra={"path": str(path), "fingerprint": plan.fingerprint, "steps": len(plan.steps)},
    )


def execution_to_dict(result: ExecutionResult) -> dict[str, Any]:
    return {
        "fingerprint": result.fingerprint,
        "status": result.status.value,
        "durationSeconds": result.duration_seconds,
        "stepCounts": result.count_by_status(),
        "failures": [{"stepId": f.step_id, "error": str(f)} for f in result.failures],
        "records": [
            result.records[k].model_dump(mode="json", by_alias=True)
            for k in sorted(result.records)
        ],
    }


# =============================================================================
# Human-readable
# =============================================================================


def _conflict_line(conflict: Conflict) -> str:
    badge = click.style(
        f"[{conflict.severity.value.upper():6}]",
        fg=SEVERITY_COLORS[conflict.severity],
        bold=conflict.severity == Severity.RED,
    )
    line = (
        f"{badge} {conflict.category.value:<18} {conflict.entity.key}\n"
        f"         {conflict.rationale} -> {conflict.suggested_action.value}"
    )
    if conflict.related:
        line += f"\n         related: {', '.join(conflict.related)}"
    return line


def render_classification(result: ClassificationResult) -> str:
    counts = result.count_by_severity()
    lines = [
        click.style("Classification", bold=True),
        "  "
        + "  ".join(
            click.style(f"{s.value}: {counts[s.value]}", fg=SEVERITY_COLORS[s]) for s in Severity
        )
        + f"  to create: {len(result.to_create)}",
        "",
    ]
    lines.extend(_conflict_line(c) for c in result.conflicts)
    for entity in result.to_create:
        lines.append(f"{click.style('[CREATE]', fg='green')} {entity.key}")
    return "\n".join(lines)


def render_plan(plan: ReconciliationPlan) -> str:
    lines = [
        click.style("Reconciliation plan", bold=True),
        f"  mode: {plan.mode.value}  unmanage: {plan.unmanage_action.value}",
        f"  fingerprint: {plan.fingerprint}",
        "",
    ]
    for rank in plan.ranks():
        lines.append(click.style(f"Rank {rank}", bold=True))
        for step in plan.steps_at(rank):
            op = click.style(f"{step.operation.value:<7}", fg=OPERATION_COLORS[step.operation])
            lines.append(f"  {op} {step.entity.key}  ({step.exclusive_group})")
    if plan.excluded:
        lines.append(click.style("Excluded", bold=True))
        for entry in plan.excluded:
            lines.append(f"  {entry.entity_key}: {entry.reason}")
    if plan.overrides:
        lines.append(click.style("Overrides applied", bold=True))
        for override in plan.overrides:
            lines.append(
                f"  {override.entity_key} -> {override.action.value} "
                f"(approved by {override.approved_by})"
            )
    if not plan.steps:
        lines.append(click.style("Nothing to do.", fg="green"))
    return "\n".join(lines)


def render_execution(result: ExecutionResult) -> str:
    color = {
        RunStatus.SUCCEEDED: "green",
        RunStatus.FAILED: "red",
        RunStatus.CANCELLED: "yellow",
    }[result.status]
    lines = [
        click.style(f"Apply {result.status.value}", fg=color, bold=True)
        + f" in {result.duration_seconds:.1f}s",
    ]
    for step_id in sorted(result.records):
        record = result.records[step_id]
        status = click.style(f"{record.status.value:<10}", fg=STATUS_COLORS[record.status])
        line = f"  {status} {step_id} (attempts: {record.attempt_count})"
        if record.last_error and record.status != StepStatus.SUCCEEDED:
            line += f"\n             {record.error_kind}: {record.last_error}"
        lines.append(line)
    return "\n".join(lines)
