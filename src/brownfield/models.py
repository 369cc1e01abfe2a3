"""Pydantic models for the reconciliation domain.

These models provide:
1. Immutable snapshots (observed and desired state are frozen once built)
2. Validation at the boundary (plan artifacts are re-validated on load)
3. Lossless JSON round-trip using the camelCase wire names
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import PlatformMode
from .errors import InvalidTransition

# =============================================================================
# Enumerations
# =============================================================================


class EntityKind(str, Enum):
    """Kinds of entity under reconciliation."""

    MANAGEMENT_GROUP = "ManagementGroup"
    SUBSCRIPTION = "Subscription"
    POLICY_DEFINITION = "PolicyDefinition"
    POLICY_SET_DEFINITION = "PolicySetDefinition"
    POLICY_ASSIGNMENT = "PolicyAssignment"
    POLICY_EXEMPTION = "PolicyExemption"
    ROLE_DEFINITION = "RoleDefinition"
    ROLE_ASSIGNMENT = "RoleAssignment"
    NETWORK_RESOURCE = "NetworkResource"

    @property
    def is_scope(self) -> bool:
        """Management groups and subscriptions are themselves hierarchy nodes."""
        return self in (EntityKind.MANAGEMENT_GROUP, EntityKind.SUBSCRIPTION)


class SourceOfTruth(str, Enum):
    DECLARED = "Declared"
    OBSERVED = "Observed"
    BOTH = "Both"


class Severity(str, Enum):
    GREEN = "Green"
    YELLOW = "Yellow"
    RED = "Red"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHT[self]


_SEVERITY_WEIGHT = {Severity.GREEN: 0, Severity.YELLOW: 1, Severity.RED: 2}


class PolicyEffect(str, Enum):
    DENY = "Deny"
    MODIFY = "Modify"
    DEPLOY_IF_NOT_EXISTS = "DeployIfNotExists"
    AUDIT = "Audit"
    AUDIT_IF_NOT_EXISTS = "AuditIfNotExists"
    DISABLED = "Disabled"

    @classmethod
    def parse(cls, value: Any) -> PolicyEffect | None:
        """Case-insensitive lookup; unknown or parameterized values yield None."""
        if isinstance(value, PolicyEffect):
            return value
        if not isinstance(value, str):
            return None
        for effect in cls:
            if effect.value.lower() == value.strip().lower():
                return effect
        return None


class ConflictCategory(str, Enum):
    NAME_COLLISION = "NameCollision"
    EFFECT_COLLISION = "EffectCollision"
    STRUCTURAL_MISMATCH = "StructuralMismatch"
    PLACEMENT_DRIFT = "PlacementDrift"
    ORPHANED = "Orphaned"
    UNREACHABLE_SCOPE = "UnreachableScope"


class SuggestedAction(str, Enum):
    ADOPT = "Adopt"
    DETACH = "Detach"
    DELETE = "Delete"
    EXCLUDE = "Exclude"
    MANUAL_RESOLUTION_REQUIRED = "ManualResolutionRequired"


class ScopeStatus(str, Enum):
    REACHABLE = "Reachable"
    UNREACHABLE = "Unreachable"


class UnmanageAction(str, Enum):
    """What happens to resources that leave management."""

    DETACH_ALL = "DetachAll"
    DELETE_ALL = "DeleteAll"

    @classmethod
    def for_mode(cls, mode: PlatformMode) -> UnmanageAction:
        if mode == PlatformMode.GREENFIELD:
            return cls.DELETE_ALL
        return cls.DETACH_ALL


class StepOperation(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    ADOPT = "Adopt"
    DETACH = "Detach"
    DELETE = "Delete"

    @property
    def is_removal(self) -> bool:
        return self in (StepOperation.DETACH, StepOperation.DELETE)


class StepStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


# Failed -> Pending is the retry edge; Cancelled and Succeeded are terminal.
ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.IN_PROGRESS, StepStatus.CANCELLED}),
    StepStatus.IN_PROGRESS: frozenset(
        {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELLED}
    ),
    StepStatus.FAILED: frozenset({StepStatus.PENDING}),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
}


# =============================================================================
# Base Models
# =============================================================================


class FrozenModel(BaseModel):
    """Immutable model serialized with camelCase aliases."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


# =============================================================================
# Entities and scopes
# =============================================================================


class ManagedEntity(FrozenModel):
    """Identity-stable unit under reconciliation.

    For ManagementGroup and Subscription, ``name`` is the node id and
    ``scope`` is the parent node id (empty for the tenant root).
    """

    kind: EntityKind
    name: Annotated[str, Field(min_length=1)]
    scope: str = ""
    source_of_truth: SourceOfTruth = Field(alias="sourceOfTruth")
    severity: Severity | None = None
    payload_hash: str = Field(alias="payloadHash")
    properties: dict[str, Any] = Field(default_factory=dict)
    effect: PolicyEffect | None = None
    principal_id: str | None = Field(None, alias="principalId")
    role_definition_name: str | None = Field(None, alias="roleDefinitionName")
    policy_assignment: str | None = Field(None, alias="policyAssignment")
    depends_on: tuple[str, ...] = Field(default=(), alias="dependsOn")
    unresolved_references: tuple[str, ...] = Field(default=(), alias="unresolvedReferences")

    @property
    def identity(self) -> tuple[EntityKind, str, str]:
        """The ``(kind, name, scope)`` triple unique within a snapshot."""
        return (self.kind, self.name, self.scope)

    @property
    def key(self) -> str:
        return entity_key(self.kind, self.name, self.scope)

    @property
    def display_name(self) -> str:
        value = self.properties.get("displayName")
        return str(value) if value else self.name

    def with_source(self, source: SourceOfTruth) -> ManagedEntity:
        return self.model_copy(update={"source_of_truth": source})

    def with_severity(self, severity: Severity) -> ManagedEntity:
        return self.model_copy(update={"severity": severity})


def entity_key(kind: EntityKind, name: str, scope: str) -> str:
    """Stable string form of an entity identity, used by overrides and step ids."""
    return f"{kind.value}:{scope}:{name}"


RESOURCE_PROVIDER_TYPES: dict[EntityKind, str] = {
    EntityKind.POLICY_DEFINITION: "Microsoft.Authorization/policyDefinitions",
    EntityKind.POLICY_SET_DEFINITION: "Microsoft.Authorization/policySetDefinitions",
    EntityKind.POLICY_ASSIGNMENT: "Microsoft.Authorization/policyAssignments",
    EntityKind.POLICY_EXEMPTION: "Microsoft.Authorization/policyExemptions",
    EntityKind.ROLE_DEFINITION: "Microsoft.Authorization/roleDefinitions",
    EntityKind.ROLE_ASSIGNMENT: "Microsoft.Authorization/roleAssignments",
}

DEFAULT_NETWORK_RESOURCE_TYPE = "Microsoft.Network/virtualNetworks"

# Built-in role name (lowercase) -> role definition GUID
BUILT_IN_ROLE_DEFINITIONS: dict[str, str] = {
    "owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "user access administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "network contributor": "4d97b98b-1d4f-4787-a291-c67834d212e7",
    "resource policy contributor": "36243c78-bf99-498c-9df9-86d9f8d28608",
}


def role_definition_guid(value: str) -> str:
    """Role definition GUID from a full id, a bare GUID or a built-in role name.

    Names that are not built-in roles are returned lowercased.
    """
    text = str(value).strip().rstrip("/").rsplit("/", 1)[-1].lower()
    return BUILT_IN_ROLE_DEFINITIONS.get(text, text)


def scope_resource_id(scope: str, *, subscription: bool = False) -> str:
    if not scope:
        return ""
    if subscription:
        return f"/subscriptions/{scope}"
    return f"/providers/Microsoft.Management/managementGroups/{scope}"


def resource_id(
    kind: EntityKind,
    name: str,
    scope: str,
    *,
    subscription_scope: bool = False,
    resource_type: str | None = None,
    resource_group: str | None = None,
) -> str:
    """ARM-style resource id for an entity."""
    if kind == EntityKind.MANAGEMENT_GROUP:
        return scope_resource_id(name)
    if kind == EntityKind.SUBSCRIPTION:
        return scope_resource_id(name, subscription=True)
    prefix = scope_resource_id(scope, subscription=subscription_scope)
    if subscription_scope and resource_group:
        prefix = f"{prefix}/resourceGroups/{resource_group}"
    provider_type = RESOURCE_PROVIDER_TYPES.get(kind) or resource_type or DEFAULT_NETWORK_RESOURCE_TYPE
    return f"{prefix}/providers/{provider_type}/{name}"


class ScopeNode(FrozenModel):
    """A node of the management hierarchy (management group or subscription)."""

    id: Annotated[str, Field(min_length=1)]
    parent_id: str | None = Field(None, alias="parentId")
    display_name: str = Field("", alias="displayName")
    child_ids: tuple[str, ...] = Field(default=(), alias="childIds")
    kind: EntityKind = EntityKind.MANAGEMENT_GROUP
    status: ScopeStatus = ScopeStatus.REACHABLE

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: EntityKind) -> EntityKind:
        if not v.is_scope:
            raise ValueError(f"scope nodes must be management groups or subscriptions: {v}")
        return v


class InventorySnapshot(FrozenModel):
    """Observed tenant state below one collection root."""

    root_id: str = Field(alias="rootId")
    scopes: tuple[ScopeNode, ...] = ()
    entities: tuple[ManagedEntity, ...] = ()
    collected_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="collectedAt"
    )

    @property
    def unreachable_scopes(self) -> list[ScopeNode]:
        return [s for s in self.scopes if s.status == ScopeStatus.UNREACHABLE]


class DesiredSet(FrozenModel):
    """Normalized desired state loaded from a manifest."""

    root_id: str | None = Field(None, alias="rootId")
    scopes: tuple[ScopeNode, ...] = ()
    entities: tuple[ManagedEntity, ...] = ()
    source_hash: str = Field("", alias="sourceHash")


# =============================================================================
# Classification
# =============================================================================


class Conflict(FrozenModel):
    entity: ManagedEntity
    category: ConflictCategory
    severity: Severity
    rationale: str
    suggested_action: SuggestedAction = Field(alias="suggestedAction")
    # Keys of counterpart entities (e.g. the desired side of a collision)
    related: tuple[str, ...] = ()

    @property
    def sort_key(self) -> tuple[int, str, str, str, str]:
        return (
            -self.severity.weight,
            self.entity.kind.value,
            self.entity.scope,
            self.entity.name,
            self.category.value,
        )


class ClassificationResult(FrozenModel):
    conflicts: tuple[Conflict, ...] = ()
    to_create: tuple[ManagedEntity, ...] = Field(default=(), alias="toCreate")
    in_sync: tuple[ManagedEntity, ...] = Field(default=(), alias="inSync")

    @property
    def red(self) -> list[Conflict]:
        return [c for c in self.conflicts if c.severity == Severity.RED]

    def count_by_severity(self) -> dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        counts[Severity.GREEN.value] = len(self.in_sync)
        for conflict in self.conflicts:
            counts[conflict.severity.value] += 1
        return counts


class OperatorOverride(FrozenModel):
    """A recorded human decision replacing the suggested action for one entity."""

    entity_key: Annotated[str, Field(min_length=1, alias="entityKey")]
    action: SuggestedAction
    reason: Annotated[str, Field(min_length=1)]
    approved_by: Annotated[str, Field(min_length=1, alias="approvedBy")]

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: SuggestedAction) -> SuggestedAction:
        if v == SuggestedAction.MANUAL_RESOLUTION_REQUIRED:
            raise ValueError("an override must choose a concrete action")
        return v


# =============================================================================
# Planning
# =============================================================================


class PlanStep(FrozenModel):
    step_id: str = Field(alias="stepId")
    operation: StepOperation
    entity: ManagedEntity
    conflicts: tuple[Conflict, ...] = ()
    unmanage_action: UnmanageAction = Field(alias="unmanageAction")
    dependency_rank: Annotated[int, Field(ge=0, alias="dependencyRank")]
    exclusive_group: str = Field(alias="exclusiveGroup")


class ExcludedEntry(FrozenModel):
    entity_key: str = Field(alias="entityKey")
    conflicts: tuple[Conflict, ...]
    reason: str


class ReconciliationPlan(FrozenModel):
    mode: PlatformMode
    unmanage_action: UnmanageAction = Field(alias="unmanageAction")
    scopes: tuple[ScopeNode, ...] = ()
    steps: tuple[PlanStep, ...] = ()
    excluded: tuple[ExcludedEntry, ...] = ()
    overrides: tuple[OperatorOverride, ...] = ()
    fingerprint: str = ""

    def ranks(self) -> list[int]:
        return sorted({s.dependency_rank for s in self.steps})

    def steps_at(self, rank: int) -> list[PlanStep]:
        return [s for s in self.steps if s.dependency_rank == rank]

    def step(self, step_id: str) -> PlanStep | None:
        for s in self.steps:
            if s.step_id == step_id:
                return s
        return None


# =============================================================================
# Execution
# =============================================================================


class ExecutionRecord(BaseModel):
    """Persisted outcome of applying one plan step.

    Mutated only by the executor, through ``transition``.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    step_id: str = Field(alias="stepId")
    status: StepStatus = StepStatus.PENDING
    attempt_count: int = Field(0, ge=0, alias="attemptCount")
    last_error: str | None = Field(None, alias="lastError")
    error_kind: str | None = Field(None, alias="errorKind")
    started_at: datetime | None = Field(None, alias="startedAt")
    finished_at: datetime | None = Field(None, alias="finishedAt")
    history: list[ExecutionRecord] = Field(default_factory=list)

    def transition(
        self,
        new_status: StepStatus,
        *,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Step '{self.step_id}': {self.status.value} -> {new_status.value} not allowed"
            )
        now = datetime.now(UTC)
        if new_status == StepStatus.IN_PROGRESS:
            self.attempt_count += 1
            if self.started_at is None:
                self.started_at = now
        if new_status in (StepStatus.FAILED, StepStatus.CANCELLED):
            self.last_error = error
            self.error_kind = error_kind
        if new_status in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELLED):
            self.finished_at = now
        elif new_status == StepStatus.PENDING:
            self.finished_at = None
        self.status = new_status

    def restarted(self) -> ExecutionRecord:
        """Fresh Pending record for a new run, keeping this one in history."""
        previous = self.model_copy(update={"history": []}, deep=True)
        return ExecutionRecord(
            step_id=self.step_id,
            history=[*(h.model_copy(deep=True) for h in self.history), previous],
        )
