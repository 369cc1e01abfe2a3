"""Conflict classifier.

Diffs an observed InventorySnapshot against a DesiredSet and assigns every
difference a category, a severity and a suggested action. Classification is a
pure function of its inputs: no I/O, no clock, deterministic ordering.

SEVERITY:
- Green: exact match (implicit adopt), reported as in-sync
- Yellow: reviewable drift that has a safe default action
- Red: the engine must not act without an operator override

Ambiguity (an unreachable scope, an unresolvable reference) is reported as a
Yellow conflict, never raised.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from .errors import ClassificationInvariantViolation
from .models import (
    ClassificationResult,
    Conflict,
    ConflictCategory,
    DesiredSet,
    EntityKind,
    InventorySnapshot,
    ManagedEntity,
    PolicyEffect,
    Severity,
    SourceOfTruth,
    SuggestedAction,
)
from .payload import payload_hash
from .rules import ConflictRuleTable, RuleContext
from .scope_tree import ScopeTree

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    """Conflict under construction; related keys may accumulate."""

    entity: ManagedEntity
    category: ConflictCategory
    severity: Severity
    rationale: str
    action: SuggestedAction
    related: set[str] = field(default_factory=set)

    def build(self) -> Conflict:
        return Conflict(
            entity=self.entity.with_severity(self.severity),
            category=self.category,
            severity=self.severity,
            rationale=self.rationale,
            suggested_action=self.action,
            related=tuple(sorted(self.related)),
        )


class ConflictClassifier:
    """Classifies observed vs desired state under a rule table."""

    def __init__(self, rules: ConflictRuleTable | None = None) -> None:
        self._rules = rules or ConflictRuleTable()

    def classify(self, observed: InventorySnapshot, desired: DesiredSet) -> ClassificationResult:
        observed_by_key = _index(observed.entities, "observed")
        desired_by_key = _index(desired.entities, "desired")
        tree = ScopeTree.merged(observed.scopes, desired.scopes)
        context = _rule_context(observed.entities, desired.entities)

        observed_by_name: dict[tuple[EntityKind, str], list[ManagedEntity]] = defaultdict(list)
        for entity in observed_by_key.values():
            observed_by_name[(entity.kind, entity.name)].append(entity)

        pending: dict[tuple[str, ConflictCategory], _Pending] = {}
        to_create: list[ManagedEntity] = []
        in_sync: list[ManagedEntity] = []
        matched: set[str] = set()

        def add(
            entity: ManagedEntity,
            category: ConflictCategory,
            severity: Severity,
            rationale: str,
            action: SuggestedAction,
            related: str | None = None,
        ) -> None:
            slot = (entity.key, category)
            if slot not in pending:
                pending[slot] = _Pending(entity, category, severity, rationale, action)
            if related:
                pending[slot].related.add(related)

        # Unreachable scopes: report the node itself, then anything desired below it
        for node in observed.unreachable_scopes:
            node_entity = observed_by_key.get(_scope_key(node.kind, node.id, node.parent_id))
            if node_entity is None:
                node_entity = _synthetic_scope_entity(node.kind, node.id, node.parent_id or "")
            add(
                node_entity,
                ConflictCategory.UNREACHABLE_SCOPE,
                Severity.YELLOW,
                f"scope '{node.id}' could not be enumerated; its contents are unknown",
                SuggestedAction.EXCLUDE,
            )

        for d in sorted(desired_by_key.values(), key=lambda e: e.key):
            observed_match = observed_by_key.get(d.key)
            location = d.name if d.kind.is_scope else d.scope
            unreachable = tree.is_within_unreachable(location) or tree.is_within_unreachable(
                d.scope
            )

            if unreachable:
                add(
                    d,
                    ConflictCategory.UNREACHABLE_SCOPE,
                    Severity.YELLOW,
                    f"declared inside unreachable scope '{unreachable}'",
                    SuggestedAction.EXCLUDE,
                )
                if observed_match is not None:
                    matched.add(d.key)
                continue

            if d.unresolved_references:
                add(
                    d,
                    ConflictCategory.STRUCTURAL_MISMATCH,
                    Severity.YELLOW,
                    "unresolvable references: " + ", ".join(d.unresolved_references),
                    SuggestedAction.MANUAL_RESOLUTION_REQUIRED,
                )
                if observed_match is not None:
                    matched.add(d.key)
                continue

            if observed_match is not None:
                matched.add(d.key)
                if observed_match.payload_hash == d.payload_hash:
                    in_sync.append(
                        d.with_source(SourceOfTruth.BOTH).with_severity(Severity.GREEN)
                    )
                    continue
                effect = d.effect or observed_match.effect
                escalated = self._rules.escalates(effect)
                add(
                    d.with_source(SourceOfTruth.BOTH),
                    ConflictCategory.EFFECT_COLLISION,
                    Severity.RED if escalated else Severity.YELLOW,
                    _effect_rationale(observed_match, d, effect, escalated),
                    (
                        SuggestedAction.MANUAL_RESOLUTION_REQUIRED
                        if escalated
                        else SuggestedAction.ADOPT
                    ),
                )
                continue

            same_name = [
                o for o in observed_by_name.get((d.kind, d.name), []) if o.scope != d.scope
            ]
            if d.kind.is_scope and same_name:
                for o in same_name:
                    add(
                        o,
                        ConflictCategory.PLACEMENT_DRIFT,
                        Severity.YELLOW,
                        f"{d.kind.value} '{d.name}' exists under '{o.scope or '<root>'}' "
                        f"but is declared under '{d.scope or '<root>'}'",
                        SuggestedAction.MANUAL_RESOLUTION_REQUIRED,
                        related=d.key,
                    )
                continue

            colliding = [o for o in same_name if tree.overlaps(o.scope, d.scope)]
            if colliding:
                for o in colliding:
                    add(
                        o,
                        ConflictCategory.NAME_COLLISION,
                        Severity.RED,
                        f"{d.kind.value} '{d.name}' exists at '{o.scope}' and is declared at "
                        f"overlapping scope '{d.scope}'; creation would be rejected",
                        SuggestedAction.MANUAL_RESOLUTION_REQUIRED,
                        related=d.key,
                    )
                continue

            if d.kind == EntityKind.MANAGEMENT_GROUP:
                misplaced = _children_elsewhere(d, desired_by_key, observed_by_name)
                if misplaced:
                    add(
                        d,
                        ConflictCategory.STRUCTURAL_MISMATCH,
                        Severity.RED,
                        f"management group '{d.name}' is missing but its declared children "
                        f"already exist under another parent: "
                        + ", ".join(sorted(f"{o.name} (under {o.scope})" for o in misplaced)),
                        SuggestedAction.MANUAL_RESOLUTION_REQUIRED,
                    )
                    for o in misplaced:
                        pending[(d.key, ConflictCategory.STRUCTURAL_MISMATCH)].related.add(o.key)
                    continue

            to_create.append(d)

        for o in sorted(observed_by_key.values(), key=lambda e: e.key):
            if o.key in matched:
                continue
            if o.kind == EntityKind.MANAGEMENT_GROUP and o.name == observed.root_id:
                add(
                    o,
                    ConflictCategory.ORPHANED,
                    Severity.YELLOW,
                    "collection root is not declared; it is never removed automatically",
                    SuggestedAction.EXCLUDE,
                )
                continue
            destructive = self._rules.destructive_on_delete(o, context)
            if destructive:
                add(
                    o,
                    ConflictCategory.ORPHANED,
                    Severity.RED,
                    f"not declared, and {destructive}",
                    SuggestedAction.MANUAL_RESOLUTION_REQUIRED,
                )
            else:
                add(
                    o,
                    ConflictCategory.ORPHANED,
                    Severity.YELLOW,
                    "observed but not declared",
                    SuggestedAction.DETACH,
                )

        conflicts = sorted((p.build() for p in pending.values()), key=lambda c: c.sort_key)
        result = ClassificationResult(
            conflicts=tuple(conflicts),
            to_create=tuple(sorted(to_create, key=lambda e: e.key)),
            in_sync=tuple(sorted(in_sync, key=lambda e: e.key)),
        )
        logger.info(
            "Classification complete",
            extra={
                "severity_counts": result.count_by_severity(),
                "to_create": len(result.to_create),
            },
        )
        return result


def classify(
    observed: InventorySnapshot,
    desired: DesiredSet,
    rules: ConflictRuleTable | None = None,
) -> ClassificationResult:
    """Classify observed vs desired state."""
    return ConflictClassifier(rules).classify(observed, desired)


def _index(entities: tuple[ManagedEntity, ...], side: str) -> dict[str, ManagedEntity]:
    index: dict[str, ManagedEntity] = {}
    for entity in entities:
        if entity.key in index:
            raise ClassificationInvariantViolation(
                f"Duplicate {side} entity key: {entity.key}"
            )
        index[entity.key] = entity
    return index


def _scope_key(kind: EntityKind, scope_id: str, parent_id: str | None) -> str:
    return _synthetic_scope_entity(kind, scope_id, parent_id or "").key


def _synthetic_scope_entity(kind: EntityKind, scope_id: str, parent_id: str) -> ManagedEntity:
    return ManagedEntity(
        kind=kind,
        name=scope_id,
        scope=parent_id,
        source_of_truth=SourceOfTruth.OBSERVED,
        payload_hash=payload_hash(kind, {}),
    )


def _rule_context(
    observed: tuple[ManagedEntity, ...], desired: tuple[ManagedEntity, ...]
) -> RuleContext:
    """Assignment effects by name; Deny wins when the two sides disagree."""
    effects: dict[str, PolicyEffect] = {}
    for entity in (*observed, *desired):
        if entity.kind != EntityKind.POLICY_ASSIGNMENT or entity.effect is None:
            continue
        if effects.get(entity.name) != PolicyEffect.DENY:
            effects[entity.name] = entity.effect
    return RuleContext(assignment_effects=effects)


def _children_elsewhere(
    parent: ManagedEntity,
    desired_by_key: dict[str, ManagedEntity],
    observed_by_name: dict[tuple[EntityKind, str], list[ManagedEntity]],
) -> list[ManagedEntity]:
    """Observed scope nodes declared as children of ``parent`` but parented elsewhere."""
    misplaced: list[ManagedEntity] = []
    for child in desired_by_key.values():
        if not child.kind.is_scope or child.scope != parent.name:
            continue
        for o in observed_by_name.get((child.kind, child.name), []):
            if o.scope != parent.name:
                misplaced.append(o)
    return misplaced


def _effect_rationale(
    observed: ManagedEntity,
    desired: ManagedEntity,
    effect: PolicyEffect | None,
    escalated: bool,
) -> str:
    text = (
        f"payload differs from declaration "
        f"(observed {observed.payload_hash[:19]}, declared {desired.payload_hash[:19]})"
    )
    if escalated and effect is not None:
        text += f"; effect {effect.value} escalates"
    return text
