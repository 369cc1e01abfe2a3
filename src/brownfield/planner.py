"""Reconciliation planner.

Turns classified conflicts and pending creations into an ordered, rank-based
plan. The planner is pure: the same inputs always produce a byte-identical
plan and the same fingerprint, which is what makes CI dry-run diffs useful.

RULES:
- Any Red conflict without an operator override refuses the whole plan
- Brownfield maps to DetachAll, greenfield to DeleteAll; never inferred
- Creations and updates rank strictly after whatever creates their scope
  or anything they depend on
- Removals rank after every creation, children before parents
- Steps touching the same principal share an exclusive group

STEP ACTIONS:
  toCreate                 -> Create
  EffectCollision (Yellow) -> Update
  Orphaned                 -> Detach (brownfield) / Delete (greenfield)
  Exclude / Manual         -> excluded, no step
  Operator override        -> replaces the suggested action
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable

from .config import PlatformMode
from .errors import ClassificationInvariantViolation, InvalidOverrideError, PlanRefused
from .models import (
    Conflict,
    ConflictCategory,
    ExcludedEntry,
    ManagedEntity,
    OperatorOverride,
    PlanStep,
    ReconciliationPlan,
    ScopeNode,
    Severity,
    SourceOfTruth,
    StepOperation,
    SuggestedAction,
    UnmanageAction,
)
from .payload import canonical_json

logger = logging.getLogger(__name__)


class ReconciliationPlanner:
    """Builds ReconciliationPlans. The only place plans are constructed."""

    def plan(
        self,
        conflicts: Iterable[Conflict],
        to_create: Iterable[ManagedEntity],
        mode: PlatformMode,
        overrides: Iterable[OperatorOverride] = (),
        scopes: Iterable[ScopeNode] = (),
    ) -> ReconciliationPlan:
        """Build a plan.

        Raises:
            PlanRefused: If a Red conflict has no override.
            InvalidOverrideError: If an override asks for an impossible action.
        """
        unmanage_action = UnmanageAction.for_mode(mode)
        override_by_key = {o.entity_key: o for o in overrides}
        applied: dict[str, OperatorOverride] = {}

        groups: dict[str, list[Conflict]] = {}
        for conflict in sorted(conflicts, key=lambda c: c.sort_key):
            groups.setdefault(conflict.entity.key, []).append(conflict)

        drafts: list[tuple[StepOperation, ManagedEntity, tuple[Conflict, ...]]] = []
        excluded: list[ExcludedEntry] = []
        unresolved: list[Conflict] = []

        for key in sorted(groups):
            group = groups[key]
            override = override_by_key.get(key)
            if override is not None:
                applied[key] = override
                if override.action == SuggestedAction.EXCLUDE:
                    excluded.append(
                        ExcludedEntry(
                            entity_key=key,
                            conflicts=tuple(group),
                            reason=f"excluded by {override.approved_by}: {override.reason}",
                        )
                    )
                    continue
                operation, entity = _override_operation(override, group)
                drafts.append((operation, entity, tuple(group)))
                continue

            red = [c for c in group if c.severity == Severity.RED]
            if red:
                unresolved.extend(red)
                continue

            blocking = [
                c
                for c in group
                if c.suggested_action
                in (SuggestedAction.EXCLUDE, SuggestedAction.MANUAL_RESOLUTION_REQUIRED)
            ]
            if blocking:
                excluded.append(
                    ExcludedEntry(
                        entity_key=key,
                        conflicts=tuple(group),
                        reason="; ".join(
                            f"{c.category.value}: {c.suggested_action.value}" for c in blocking
                        ),
                    )
                )
                continue

            operation, entity = _default_operation(group, mode)
            drafts.append((operation, entity, tuple(group)))

        if unresolved:
            unresolved.sort(key=lambda c: c.sort_key)
            logger.warning(
                "Plan refused: unresolved Red conflicts",
                extra={"red_conflicts": [c.entity.key for c in unresolved]},
            )
            raise PlanRefused(unresolved)

        for entity in sorted(to_create, key=lambda e: e.key):
            override = override_by_key.get(entity.key)
            if override is not None:
                applied[entity.key] = override
                if override.action == SuggestedAction.EXCLUDE:
                    excluded.append(
                        ExcludedEntry(
                            entity_key=entity.key,
                            conflicts=(),
                            reason=f"excluded by {override.approved_by}: {override.reason}",
                        )
                    )
                    continue
                if override.action != SuggestedAction.ADOPT:
                    raise InvalidOverrideError(
                        f"Override {override.action.value} on '{entity.key}': "
                        "entity does not exist yet"
                    )
            drafts.append((StepOperation.CREATE, entity, ()))

        unused = sorted(set(override_by_key) - set(applied))
        if unused:
            logger.warning("Overrides matched no conflict", extra={"entity_keys": unused})

        ranks = _assign_ranks(drafts)
        steps = [
            PlanStep(
                step_id=step_id(operation, entity),
                operation=operation,
                entity=entity,
                conflicts=group,
                unmanage_action=unmanage_action,
                dependency_rank=ranks[i],
                exclusive_group=exclusive_group(entity),
            )
            for i, (operation, entity, group) in enumerate(drafts)
        ]
        steps.sort(key=lambda s: (s.dependency_rank, s.step_id))
        _check_unique_step_ids(steps)

        plan = ReconciliationPlan(
            mode=mode,
            unmanage_action=unmanage_action,
            scopes=tuple(sorted(scopes, key=lambda s: s.id)),
            steps=tuple(steps),
            excluded=tuple(sorted(excluded, key=lambda e: e.entity_key)),
            overrides=tuple(applied[k] for k in sorted(applied)),
        )
        plan = plan.model_copy(update={"fingerprint": compute_fingerprint(plan)})

        logger.info(
            "Plan built",
            extra={
                "mode": mode.value,
                "steps": len(plan.steps),
                "ranks": len(plan.ranks()),
                "excluded": len(plan.excluded),
                "overrides": len(plan.overrides),
                "fingerprint": plan.fingerprint,
            },
        )
        return plan


def plan(
    conflicts: Iterable[Conflict],
    to_create: Iterable[ManagedEntity],
    mode: PlatformMode,
    overrides: Iterable[OperatorOverride] = (),
    scopes: Iterable[ScopeNode] = (),
) -> ReconciliationPlan:
    return ReconciliationPlanner().plan(conflicts, to_create, mode, overrides, scopes)


def step_id(operation: StepOperation, entity: ManagedEntity) -> str:
    return f"{operation.value.lower()}:{entity.key}"


def exclusive_group(entity: ManagedEntity) -> str:
    if entity.principal_id:
        return f"identity:{entity.principal_id}"
    return f"entity:{entity.key}"


def stable_plan_json(plan: ReconciliationPlan) -> str:
    """Canonical serialization the fingerprint is computed over."""
    return canonical_json(plan.model_dump(mode="json", by_alias=True, exclude={"fingerprint"}))


def compute_fingerprint(plan: ReconciliationPlan) -> str:
    return "sha256:" + hashlib.sha256(stable_plan_json(plan).encode("utf-8")).hexdigest()


def _default_operation(
    group: list[Conflict], mode: PlatformMode
) -> tuple[StepOperation, ManagedEntity]:
    primary = group[0]
    if primary.category == ConflictCategory.EFFECT_COLLISION:
        return StepOperation.UPDATE, primary.entity
    if primary.category == ConflictCategory.ORPHANED:
        if mode == PlatformMode.GREENFIELD:
            return StepOperation.DELETE, primary.entity
        return StepOperation.DETACH, primary.entity
    if primary.suggested_action == SuggestedAction.DELETE:
        return StepOperation.DELETE, primary.entity
    if primary.suggested_action == SuggestedAction.DETACH:
        return StepOperation.DETACH, primary.entity
    return StepOperation.ADOPT, primary.entity


def _override_operation(
    override: OperatorOverride, group: list[Conflict]
) -> tuple[StepOperation, ManagedEntity]:
    declared = next(
        (c.entity for c in group if c.entity.source_of_truth != SourceOfTruth.OBSERVED), None
    )
    observed = next(
        (c.entity for c in group if c.entity.source_of_truth != SourceOfTruth.DECLARED), None
    )

    match override.action:
        case SuggestedAction.ADOPT:
            if declared is not None:
                if declared.source_of_truth == SourceOfTruth.BOTH:
                    return StepOperation.UPDATE, declared
                return StepOperation.CREATE, declared
            if observed is None:
                raise InvalidOverrideError(f"Nothing to adopt for '{override.entity_key}'")
            return StepOperation.ADOPT, observed
        case SuggestedAction.DETACH | SuggestedAction.DELETE:
            if observed is None:
                raise InvalidOverrideError(
                    f"Override {override.action.value} on '{override.entity_key}': "
                    "entity is not observed"
                )
            if override.action == SuggestedAction.DELETE:
                return StepOperation.DELETE, observed
            return StepOperation.DETACH, observed
        case _:
            raise InvalidOverrideError(
                f"Override action {override.action.value} cannot be planned"
            )


def _assign_ranks(
    drafts: list[tuple[StepOperation, ManagedEntity, tuple[Conflict, ...]]],
) -> list[int]:
    """Dependency rank per draft step, in draft order."""
    forward: dict[str, int] = {}  # entity key -> draft index, creations and updates
    scope_step: dict[str, int] = {}  # scope id -> draft index that creates or updates it
    removals: list[int] = []
    for i, (operation, entity, _) in enumerate(drafts):
        if operation.is_removal:
            removals.append(i)
            continue
        forward[entity.key] = i
        if entity.kind.is_scope:
            scope_step[entity.name] = i

    ranks: dict[int, int] = {}
    visiting: set[int] = set()

    def forward_rank(i: int) -> int:
        if i in ranks:
            return ranks[i]
        if i in visiting:
            raise ClassificationInvariantViolation(
                f"Dependency cycle through '{drafts[i][1].key}'"
            )
        visiting.add(i)
        entity = drafts[i][1]
        prerequisites = [forward[k] for k in entity.depends_on if k in forward]
        if entity.scope in scope_step:
            prerequisites.append(scope_step[entity.scope])
        rank = 1 + max((forward_rank(p) for p in prerequisites if p != i), default=-1)
        visiting.discard(i)
        ranks[i] = rank
        return rank

    for i in forward.values():
        forward_rank(i)

    base = max(ranks.values(), default=-1) + 1

    # Children (anything whose scope is the removed node) go first
    removed_scopes: dict[str, list[int]] = {}
    for i in removals:
        removed_scopes.setdefault(drafts[i][1].scope, []).append(i)

    heights: dict[int, int] = {}

    def height(i: int, seen: frozenset[int]) -> int:
        if i in heights:
            return heights[i]
        entity = drafts[i][1]
        children = removed_scopes.get(entity.name, []) if entity.kind.is_scope else []
        value = 1 + max(
            (height(c, seen | {i}) for c in children if c not in seen and c != i), default=-1
        )
        heights[i] = value
        return value

    for i in removals:
        ranks[i] = base + height(i, frozenset())

    return [ranks[i] for i in range(len(drafts))]


def _check_unique_step_ids(steps: list[PlanStep]) -> None:
    seen: set[str] = set()
    for step in steps:
        if step.step_id in seen:
            raise ClassificationInvariantViolation(f"Duplicate plan step: {step.step_id}")
        seen.add(step.step_id)
