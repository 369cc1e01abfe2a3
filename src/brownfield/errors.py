"""Error taxonomy for the reconciliation phases.

Each phase raises from its own branch of the hierarchy so callers (and the
CLI exit-code mapping) can tell a collection failure from a refused plan
without parsing messages. Cancellation is not an exception here:
it is a terminal step status reported through the execution result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Conflict


class ReconciliationError(Exception):
    """Base class for all reconciliation errors."""

    pass


# =============================================================================
# Collection
# =============================================================================


class CollectionError(ReconciliationError):
    """Inventory collection failed."""

    pass


class ControlPlaneUnavailable(CollectionError):
    """The control plane could not be reached after retries."""

    pass


class PartialScopeAuthorizationDenied(CollectionError):
    """The collection root itself could not be enumerated.

    Sub-scopes that deny access are recorded as Unreachable instead of
    raising this.
    """

    pass


# =============================================================================
# Desired state
# =============================================================================


class ManifestError(ReconciliationError):
    """The desired-state manifest is unusable. Always fatal."""

    pass


class ManifestParseError(ManifestError):
    """The manifest could not be read, parsed or validated."""

    pass


# =============================================================================
# Classification
# =============================================================================


class ClassificationInvariantViolation(ReconciliationError):
    """A snapshot invariant does not hold (duplicate key, scope cycle).

    This signals a bug or corrupted input and is never recoverable.
    """

    pass


# =============================================================================
# Planning
# =============================================================================


class PlanRefused(ReconciliationError):
    """Planning refused because Red conflicts have no operator override."""

    def __init__(self, unresolved: list[Conflict]) -> None:
        self.unresolved = unresolved
        keys = ", ".join(c.entity.key for c in unresolved[:10])
        more = f" (+{len(unresolved) - 10} more)" if len(unresolved) > 10 else ""
        super().__init__(
            f"{len(unresolved)} Red conflict(s) require an operator override: {keys}{more}"
        )


class InvalidOverrideError(ReconciliationError):
    """An operator override cannot be applied."""

    pass


# =============================================================================
# Execution
# =============================================================================


class ExecutionTransient(ReconciliationError):
    """A retryable execution failure (timeout or transient control-plane error)."""

    pass


class ExecutionFailed(ReconciliationError):
    """A step failed permanently or exhausted its retries."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' failed: {message}")


class InvalidTransition(ReconciliationError):
    """An ExecutionRecord transition not allowed by the step state machine."""

    pass


class PlanArtifactError(ReconciliationError):
    """A persisted plan artifact could not be read back."""

    pass
