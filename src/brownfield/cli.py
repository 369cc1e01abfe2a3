"""Brownfield reconciliation CLI.

Usage:
    brownfield discover --manifest platform.yaml      # Classify, read-only
    brownfield plan --manifest platform.yaml          # Write plan.json, read-only
    brownfield apply plan.json                        # Execute a reviewed plan

Exit codes:
    0  success
    1  Red conflicts block planning
    2  execution failed after retries
    3  cancelled by the operator (SIGINT/SIGTERM during apply)
    4  configuration, collection or manifest error
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import NoReturn

import click

from .azure_control_plane import AzureControlPlane
from .config import ConfigurationError, PlatformMode, TenantConfig
from .control_plane import ControlPlane
from .errors import (
    ClassificationInvariantViolation,
    CollectionError,
    InvalidOverrideError,
    ManifestError,
    PlanArtifactError,
    PlanRefused,
)
from .executor import RunStatus
from .main import Discovery, apply, build_plan, discover, setup_logging
from .manifest import load_overrides
from .provenance import RunProvenance, get_provenance_logger
from .report import (
    classification_to_json,
    execution_to_dict,
    read_plan_artifact,
    render_classification,
    render_execution,
    render_plan,
    write_plan_artifact,
)
from .rules import ConflictRuleTable, RulesError
from .security import SecretCredentialError, managed_identity_credential

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PLAN_REFUSED = 1
EXIT_EXECUTION_FAILED = 2
EXIT_CANCELLED = 3
EXIT_INPUT_ERROR = 4

DEFAULT_PLAN_FILE = "plan.json"

# Errors that mean the inputs (config, tenant reads, manifest) are unusable
INPUT_ERRORS: tuple[type[Exception], ...] = (
    ConfigurationError,
    CollectionError,
    ManifestError,
    RulesError,
    PlanArtifactError,
    InvalidOverrideError,
    ClassificationInvariantViolation,
    SecretCredentialError,
)

ControlPlaneFactory = Callable[[TenantConfig], ControlPlane]


def azure_control_plane(config: TenantConfig) -> ControlPlane:
    """Default factory: Azure adapter with a managed identity."""
    return AzureControlPlane(managed_identity_credential(), config)


def load_config(platform_file: Path | None, mode: str | None) -> TenantConfig:
    """Platform file if given, else environment; ``--mode`` wins over both."""
    config = TenantConfig.from_file(platform_file) if platform_file else TenantConfig.from_env()
    if mode:
        config = config.with_mode(PlatformMode(mode))
    return config


def _fail(ctx: click.Context, message: str, code: int) -> NoReturn:
    click.secho(f"Error: {message}", fg="red", err=True)
    ctx.exit(code)


def _finish(
    provenance: RunProvenance,
    started: float,
    outcome: str,
    error: BaseException | None = None,
) -> None:
    provenance.outcome = outcome
    provenance.duration_seconds = round(time.monotonic() - started, 3)
    if error is not None:
        provenance.record_error(error)
    get_provenance_logger().log_provenance(provenance)


class _Run:
    """Config, control plane and provenance for one command invocation."""

    def __init__(self, ctx: click.Context, command: str) -> None:
        self.ctx = ctx
        self.started = time.monotonic()
        try:
            self.config = load_config(ctx.obj["platform_file"], ctx.obj["mode"])
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            _fail(ctx, str(e), EXIT_INPUT_ERROR)
        self.provenance = get_provenance_logger().create_provenance(command, self.config)

    def control_plane(self) -> ControlPlane:
        factory: ControlPlaneFactory = self.ctx.obj["control_plane_factory"]
        return factory(self.config)

    def input_error(self, error: Exception) -> NoReturn:
        logger.error(
            "Run aborted",
            extra={"error": str(error), "error_type": type(error).__name__},
        )
        _finish(self.provenance, self.started, "error", error)
        _fail(self.ctx, str(error), EXIT_INPUT_ERROR)

    def finish(self, outcome: str, error: BaseException | None = None) -> None:
        _finish(self.provenance, self.started, outcome, error)


def _discover(run: _Run, manifest: Path, rules_file: Path | None) -> Discovery:
    rules = ConflictRuleTable.from_file(rules_file) if rules_file else None
    discovery = asyncio.run(discover(run.control_plane(), run.config, manifest, rules=rules))
    run.provenance.manifest_hash = discovery.desired.source_hash
    run.provenance.severity_counts = discovery.classification.count_by_severity()
    return discovery


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="brownfield")
@click.option(
    "--platform-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="platform.json with tenant settings (default: environment variables).",
)
@click.option(
    "--mode",
    type=click.Choice([m.value for m in PlatformMode]),
    default=None,
    help="Platform mode; overrides PLATFORM_MODE and the platform file.",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Log line format on stderr.",
)
@click.pass_context
def cli(ctx: click.Context, platform_file: Path | None, mode: str | None, log_format: str) -> None:
    """Brownfield reconciliation for an existing landing-zone tenant.

    \b
    Typical flow:
        brownfield discover --manifest platform.yaml
        brownfield plan --manifest platform.yaml --out plan.json
        brownfield apply plan.json
    """
    setup_logging(log_format)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("control_plane_factory", azure_control_plane)
    ctx.obj["platform_file"] = platform_file
    ctx.obj["mode"] = mode


manifest_option = click.option(
    "--manifest",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Desired-state YAML manifest.",
)
rules_option = click.option(
    "--rules",
    "rules_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="YAML rule table (escalatingEffects, destructiveRoles).",
)
json_option = click.option(
    "--json", "as_json", is_flag=True, help="Print the JSON report instead of the summary."
)


@cli.command("discover")
@manifest_option
@rules_option
@json_option
@click.pass_context
def discover_command(
    ctx: click.Context, manifest: Path, rules_file: Path | None, as_json: bool
) -> None:
    """Collect, load and classify. Never mutates the tenant."""
    run = _Run(ctx, "discover")
    try:
        discovery = _discover(run, manifest, rules_file)
    except INPUT_ERRORS as e:
        run.input_error(e)

    result = discovery.classification
    click.echo(classification_to_json(result) if as_json else render_classification(result))
    run.finish("succeeded")


@cli.command("plan")
@manifest_option
@click.option(
    "--overrides",
    "overrides_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="YAML file of operator overrides.",
)
@rules_option
@click.option(
    "--out",
    type=click.Path(path_type=Path, dir_okay=False),
    default=DEFAULT_PLAN_FILE,
    show_default=True,
    help="Where to write the plan artifact.",
)
@json_option
@click.pass_context
def plan_command(
    ctx: click.Context,
    manifest: Path,
    overrides_file: Path | None,
    rules_file: Path | None,
    out: Path,
    as_json: bool,
) -> None:
    """Classify and plan, then write the plan artifact. Never mutates the tenant."""
    run = _Run(ctx, "plan")
    try:
        overrides = load_overrides(overrides_file) if overrides_file else ()
        discovery = _discover(run, manifest, rules_file)
    except INPUT_ERRORS as e:
        run.input_error(e)

    try:
        plan = build_plan(discovery, run.config, overrides)
    except PlanRefused as e:
        if not as_json:
            click.echo(render_classification(discovery.classification))
        run.finish("refused", e)
        _fail(ctx, str(e), EXIT_PLAN_REFUSED)
    except INPUT_ERRORS as e:
        run.input_error(e)

    run.provenance.plan_fingerprint = plan.fingerprint
    try:
        write_plan_artifact(plan, out)
    except OSError as e:
        run.input_error(e)

    if as_json:
        click.echo(json.dumps({"planFile": str(out), "fingerprint": plan.fingerprint}))
    else:
        click.echo(render_plan(plan))
        click.secho(f"Plan written to {out}", fg="green")
    run.finish("succeeded")


@cli.command("apply")
@click.argument("plan_file", type=click.Path(path_type=Path, dir_okay=False))
@json_option
@click.pass_context
def apply_command(ctx: click.Context, plan_file: Path, as_json: bool) -> None:
    """Execute a plan artifact produced by `plan`."""
    run = _Run(ctx, "apply")
    try:
        plan = read_plan_artifact(plan_file)
        run.provenance.plan_fingerprint = plan.fingerprint
        result = asyncio.run(apply(run.control_plane(), run.config, plan))
    except INPUT_ERRORS as e:
        run.input_error(e)

    run.provenance.step_counts = result.count_by_status()
    if as_json:
        click.echo(json.dumps(execution_to_dict(result), indent=2, sort_keys=True))
    else:
        click.echo(render_execution(result))

    match result.status:
        case RunStatus.SUCCEEDED:
            run.finish("succeeded")
        case RunStatus.CANCELLED:
            run.finish("cancelled")
            ctx.exit(EXIT_CANCELLED)
        case _:
            failure = result.failures[0] if result.failures else None
            run.finish("failed", failure)
            ctx.exit(EXIT_EXECUTION_FAILED)


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
