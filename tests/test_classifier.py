"""Tests for the conflict classifier."""

from collections import Counter

import pytest

from brownfield.classifier import ConflictClassifier, classify
from brownfield.errors import ClassificationInvariantViolation
from brownfield.models import (
    ClassificationResult,
    ConflictCategory,
    DesiredSet,
    EntityKind,
    InventorySnapshot,
    ManagedEntity,
    ScopeNode,
    ScopeStatus,
    Severity,
    SourceOfTruth,
    SuggestedAction,
)
from brownfield.rules import ConflictRuleTable
from control_plane_mock import make_entity

MG = EntityKind.MANAGEMENT_GROUP
DECLARED = SourceOfTruth.DECLARED

SCOPES = (
    ScopeNode(id="tenant-root"),
    ScopeNode(id="platform", parent_id="tenant-root"),
    ScopeNode(id="landing-zones", parent_id="tenant-root"),
    ScopeNode(id="corp", parent_id="landing-zones"),
)
HIERARCHY = (
    make_entity(MG, "platform", "tenant-root"),
    make_entity(MG, "landing-zones", "tenant-root"),
    make_entity(MG, "corp", "landing-zones"),
)


def _observed(*entities: ManagedEntity, scopes: tuple[ScopeNode, ...] = SCOPES) -> InventorySnapshot:
    return InventorySnapshot(
        root_id="tenant-root",
        scopes=scopes,
        entities=(make_entity(MG, "tenant-root"), *HIERARCHY, *entities),
    )


def _desired(*entities: ManagedEntity, with_hierarchy: bool = True) -> DesiredSet:
    declared = [*(HIERARCHY if with_hierarchy else ()), *entities]
    return DesiredSet(
        root_id="tenant-root",
        entities=tuple(e.with_source(DECLARED) for e in declared),
    )


def _conflicts_for(result: ClassificationResult, key: str) -> list:
    return [c for c in result.conflicts if c.entity.key == key]


class TestMatching:
    """Tests for declared entities that exist."""

    def test_exact_match_is_green(self) -> None:
        """Identical payloads are in sync and raise no conflict."""
        assignment = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp", {"displayName": "Deny PIP"}
        )

        result = classify(_observed(assignment), _desired(assignment))

        in_sync = {e.key: e for e in result.in_sync}
        assert assignment.key in in_sync
        assert in_sync[assignment.key].source_of_truth == SourceOfTruth.BOTH
        assert in_sync[assignment.key].severity == Severity.GREEN
        assert _conflicts_for(result, assignment.key) == []
        assert result.count_by_severity()["Green"] == len(result.in_sync)

    def test_payload_drift_is_yellow(self) -> None:
        """A non-escalating effect drift suggests Adopt."""
        observed = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "audit-tags", "corp", {"displayName": "old"}, effect="Audit"
        )
        declared = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "audit-tags", "corp", {"displayName": "new"}, effect="Audit"
        )

        (conflict,) = _conflicts_for(classify(_observed(observed), _desired(declared)), declared.key)

        assert conflict.category == ConflictCategory.EFFECT_COLLISION
        assert conflict.severity == Severity.YELLOW
        assert conflict.suggested_action == SuggestedAction.ADOPT
        assert conflict.entity.source_of_truth == SourceOfTruth.BOTH

    @pytest.mark.parametrize("effect", ["Deny", "Modify"])
    def test_escalating_effect_is_red(self, effect: str) -> None:
        """Deny and Modify drift needs a human."""
        observed = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "p", "corp", {"displayName": "old"}, effect=effect
        )
        declared = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "p", "corp", {"displayName": "new"}, effect=effect
        )

        (conflict,) = _conflicts_for(classify(_observed(observed), _desired(declared)), declared.key)

        assert conflict.severity == Severity.RED
        assert conflict.suggested_action == SuggestedAction.MANUAL_RESOLUTION_REQUIRED
        assert effect in conflict.rationale

    def test_custom_rule_table(self) -> None:
        """The rule table decides which effects escalate."""
        observed = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "p", "corp", {"displayName": "old"}, effect="Audit"
        )
        declared = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "p", "corp", {"displayName": "new"}, effect="Audit"
        )
        rules = ConflictRuleTable(escalating_effects=frozenset({observed.effect}))  # type: ignore[arg-type]

        result = ConflictClassifier(rules).classify(_observed(observed), _desired(declared))

        assert result.red[0].entity.key == declared.key


class TestCollisions:
    """Tests for same-name entities at other scopes."""

    def test_name_collision_at_overlapping_scope(self) -> None:
        """Same name at an ancestor scope is a Red collision on the observed entity."""
        observed = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "landing-zones")
        declared = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp")

        result = classify(_observed(observed), _desired(declared))

        (collision,) = [
            c for c in result.conflicts if c.category == ConflictCategory.NAME_COLLISION
        ]
        assert collision.entity.key == observed.key
        assert collision.severity == Severity.RED
        assert collision.related == (declared.key,)
        assert declared.key not in {e.key for e in result.to_create}

    def test_name_collision_between_siblings(self) -> None:
        """A definition at one management group collides with its sibling's declaration."""
        observed = make_entity(EntityKind.POLICY_DEFINITION, "Deny-Public-IP", "platform")
        declared = make_entity(EntityKind.POLICY_DEFINITION, "Deny-Public-IP", "landing-zones")

        result = classify(_observed(observed), _desired(declared))

        (collision,) = [
            c for c in result.conflicts if c.category == ConflictCategory.NAME_COLLISION
        ]
        assert collision.entity.key == observed.key
        assert collision.severity == Severity.RED
        assert collision.suggested_action == SuggestedAction.MANUAL_RESOLUTION_REQUIRED
        assert collision.related == (declared.key,)
        assert declared.key not in {e.key for e in result.to_create}

    def test_no_collision_across_cousins(self) -> None:
        """Non-overlapping scopes do not collide."""
        observed = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "platform")
        declared = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp")

        result = classify(_observed(observed), _desired(declared))

        assert declared.key in {e.key for e in result.to_create}
        assert not any(c.category == ConflictCategory.NAME_COLLISION for c in result.conflicts)

    def test_placement_drift(self) -> None:
        """A management group under another parent is drift, not a collision."""
        declared = make_entity(MG, "corp", "platform")
        hierarchy = [e for e in HIERARCHY if e.name != "corp"]
        desired = DesiredSet(
            root_id="tenant-root",
            entities=tuple(e.with_source(DECLARED) for e in (*hierarchy, declared)),
        )

        result = classify(_observed(), desired)

        (drift,) = [c for c in result.conflicts if c.category == ConflictCategory.PLACEMENT_DRIFT]
        assert drift.entity.key == "ManagementGroup:landing-zones:corp"
        assert drift.severity == Severity.YELLOW
        assert drift.related == (declared.key,)
        assert declared.key not in {e.key for e in result.to_create}

    def test_missing_parent_with_children_elsewhere(self) -> None:
        """A declared parent whose children already live elsewhere is Red."""
        new_parent = make_entity(MG, "online", "tenant-root")
        moved_child = make_entity(MG, "corp", "online")
        hierarchy = [e for e in HIERARCHY if e.name != "corp"]
        desired = DesiredSet(
            root_id="tenant-root",
            entities=tuple(e.with_source(DECLARED) for e in (*hierarchy, new_parent, moved_child)),
        )

        result = classify(_observed(), desired)

        (mismatch,) = [
            c for c in result.conflicts if c.category == ConflictCategory.STRUCTURAL_MISMATCH
        ]
        assert mismatch.entity.key == new_parent.key
        assert mismatch.severity == Severity.RED
        assert mismatch.related == ("ManagementGroup:landing-zones:corp",)


class TestOrphans:
    """Tests for observed entities nobody declared."""

    def test_orphan_suggests_detach(self) -> None:
        """Undeclared entities are Yellow and suggest Detach."""
        orphan = make_entity(EntityKind.POLICY_DEFINITION, "legacy", "corp")

        (conflict,) = _conflicts_for(classify(_observed(orphan), _desired()), orphan.key)

        assert conflict.category == ConflictCategory.ORPHANED
        assert conflict.severity == Severity.YELLOW
        assert conflict.suggested_action == SuggestedAction.DETACH

    def test_privileged_role_orphan_is_red(self) -> None:
        """Removing an Owner assignment is never automatic."""
        orphan = make_entity(
            EntityKind.ROLE_ASSIGNMENT, "ra-owner", "corp", role_definition_name="Owner"
        )

        (conflict,) = _conflicts_for(classify(_observed(orphan), _desired()), orphan.key)

        assert conflict.severity == Severity.RED
        assert "Owner" in conflict.rationale

    def test_exemption_of_deny_assignment_is_red(self) -> None:
        """An orphaned exemption that shields a Deny assignment escalates."""
        assignment = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp", effect="Deny")
        exemption = make_entity(
            EntityKind.POLICY_EXEMPTION, "legacy-waiver", "corp", policy_assignment="deny-pip"
        )

        result = classify(_observed(assignment, exemption), _desired(assignment))

        (conflict,) = _conflicts_for(result, exemption.key)
        assert conflict.severity == Severity.RED
        assert conflict.category == ConflictCategory.ORPHANED
        assert conflict.suggested_action == SuggestedAction.MANUAL_RESOLUTION_REQUIRED
        assert "deny-pip" in conflict.rationale

    def test_collection_root_excluded(self) -> None:
        """The undeclared collection root is reported but never removed."""
        (conflict,) = _conflicts_for(
            classify(_observed(), _desired()), "ManagementGroup::tenant-root"
        )

        assert conflict.category == ConflictCategory.ORPHANED
        assert conflict.suggested_action == SuggestedAction.EXCLUDE

    def test_no_silent_loss(self) -> None:
        """Every observed entity without a declaration has exactly one Orphaned conflict."""
        observed = [
            make_entity(EntityKind.POLICY_DEFINITION, f"def-{i}", "corp") for i in range(5)
        ] + [
            make_entity(EntityKind.ROLE_ASSIGNMENT, "ra-owner", "corp", role_definition_name="Owner"),
            make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "landing-zones"),
        ]
        declared = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp")

        snapshot = _observed(*observed)
        result = classify(snapshot, _desired(declared))

        desired_keys = {e.key for e in _desired(declared).entities}
        orphaned = Counter(
            c.entity.key for c in result.conflicts if c.category == ConflictCategory.ORPHANED
        )
        for entity in snapshot.entities:
            if entity.key not in desired_keys:
                assert orphaned[entity.key] == 1, entity.key


class TestAmbiguity:
    """Tests for uncertainty reported as data."""

    def test_unreachable_scope(self) -> None:
        """Declarations inside an unreachable scope are excluded, not created."""
        subscription = make_entity(EntityKind.SUBSCRIPTION, "sub-1", "corp")
        scopes = (
            *SCOPES,
            ScopeNode(
                id="sub-1",
                parent_id="corp",
                kind=EntityKind.SUBSCRIPTION,
                status=ScopeStatus.UNREACHABLE,
            ),
        )
        network = make_entity(EntityKind.NETWORK_RESOURCE, "hub", "sub-1")

        result = classify(_observed(subscription, scopes=scopes), _desired(subscription, network))

        for key in (subscription.key, network.key):
            (conflict,) = _conflicts_for(result, key)
            assert conflict.category == ConflictCategory.UNREACHABLE_SCOPE
            assert conflict.severity == Severity.YELLOW
            assert conflict.suggested_action == SuggestedAction.EXCLUDE
        assert result.to_create == ()

    def test_unresolved_reference(self) -> None:
        """Unresolved references become a Yellow StructuralMismatch."""
        declared = make_entity(
            EntityKind.POLICY_ASSIGNMENT,
            "deny-pip",
            "corp",
            unresolved_references=("${policyDefinitions.Missing.id}",),
        )

        (conflict,) = _conflicts_for(classify(_observed(), _desired(declared)), declared.key)

        assert conflict.category == ConflictCategory.STRUCTURAL_MISMATCH
        assert conflict.severity == Severity.YELLOW
        assert conflict.suggested_action == SuggestedAction.MANUAL_RESOLUTION_REQUIRED
        assert "Missing" in conflict.rationale


class TestInvariants:
    """Tests for determinism and input checks."""

    def test_deterministic(self) -> None:
        """Input order does not change the result."""
        entities = [
            make_entity(EntityKind.POLICY_DEFINITION, f"def-{i}", "corp") for i in range(4)
        ]
        declared = make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp")

        a = classify(_observed(*entities), _desired(declared))
        b = classify(_observed(*reversed(entities)), _desired(declared))

        assert a == b

    def test_red_sorted_first(self) -> None:
        """Conflicts are ordered by descending severity."""
        result = classify(
            _observed(
                make_entity(EntityKind.POLICY_DEFINITION, "legacy", "corp"),
                make_entity(EntityKind.ROLE_ASSIGNMENT, "ra", "corp", role_definition_name="Owner"),
            ),
            _desired(),
        )

        assert result.conflicts[0].severity == Severity.RED

    def test_duplicate_observed_key(self) -> None:
        """Duplicate keys in a snapshot are an invariant violation."""
        entity = make_entity(EntityKind.POLICY_DEFINITION, "legacy", "corp")

        with pytest.raises(ClassificationInvariantViolation, match="Duplicate observed"):
            classify(_observed(entity, entity), _desired())
