"""Tests for manifest loading and reference resolution."""

from pathlib import Path

import pytest

from brownfield.errors import ManifestParseError
from brownfield.manifest import load_manifest, load_manifest_text, load_overrides
from brownfield.models import EntityKind, PolicyEffect, SourceOfTruth, SuggestedAction

MANIFEST = """
rootScope: tenant-root
managementGroups:
  - name: alz
    displayName: Azure Landing Zones
  - name: platform
    parent: alz
subscriptions:
  - name: 00000000-0000-0000-0000-000000000001
    managementGroup: platform
policyDefinitions:
  - name: Deny-Public-IP
    scope: alz
    effect: Deny
policyAssignments:
  - name: deny-pip
    scope: platform
    policyDefinition: ${policyDefinitions.Deny-Public-IP.id}
roleAssignments:
  - name: ra-netops
    scope: platform
    principalId: 9f0c0c44-0000-0000-0000-000000000000
    roleDefinitionName: Network Contributor
"""


def _by_key(manifest: str) -> dict:
    desired = load_manifest_text(manifest)
    return {e.key: e for e in desired.entities}


class TestLoadManifest:
    """Tests for building the desired set."""

    def test_entities_and_scopes(self) -> None:
        """Every declared item becomes a Declared entity with its scope."""
        desired = load_manifest_text(MANIFEST)
        entities = {e.key: e for e in desired.entities}

        assert desired.root_id == "tenant-root"
        assert set(entities) == {
            "ManagementGroup:tenant-root:alz",
            "ManagementGroup:alz:platform",
            "Subscription:platform:00000000-0000-0000-0000-000000000001",
            "PolicyDefinition:alz:Deny-Public-IP",
            "PolicyAssignment:platform:deny-pip",
            "RoleAssignment:platform:ra-netops",
        }
        assert all(e.source_of_truth == SourceOfTruth.DECLARED for e in desired.entities)
        assert {s.id for s in desired.scopes} == {
            "alz",
            "platform",
            "00000000-0000-0000-0000-000000000001",
        }

    def test_id_reference_resolved(self) -> None:
        """An id reference becomes the ARM id, stored under the ARM property name."""
        assignment = _by_key(MANIFEST)["PolicyAssignment:platform:deny-pip"]

        assert assignment.properties["policyDefinitionId"] == (
            "/providers/microsoft.management/managementgroups/alz"
            "/providers/microsoft.authorization/policydefinitions/deny-public-ip"
        )
        assert "policyDefinition" not in assignment.properties
        assert assignment.depends_on == ("PolicyDefinition:alz:Deny-Public-IP",)
        assert assignment.unresolved_references == ()

    def test_effect_inherited_from_definition(self) -> None:
        """Assignments take the effect of the referenced definition."""
        assignment = _by_key(MANIFEST)["PolicyAssignment:platform:deny-pip"]

        assert assignment.effect == PolicyEffect.DENY

    def test_parameter_effect_overrides_definition(self) -> None:
        """parameters.effect wins over the definition effect."""
        manifest = MANIFEST.replace(
            "    policyDefinition: ${policyDefinitions.Deny-Public-IP.id}\n",
            "    policyDefinition: ${policyDefinitions.Deny-Public-IP.id}\n"
            "    parameters:\n"
            "      effect:\n"
            "        value: Audit\n",
        )

        assert _by_key(manifest)["PolicyAssignment:platform:deny-pip"].effect == PolicyEffect.AUDIT

    def test_role_assignment_fields(self) -> None:
        """Principal and role are lifted onto the entity."""
        assignment = _by_key(MANIFEST)["RoleAssignment:platform:ra-netops"]

        assert assignment.principal_id == "9f0c0c44-0000-0000-0000-000000000000"
        assert assignment.role_definition_name == "Network Contributor"

    def test_unresolved_reference_kept(self) -> None:
        """A dangling reference is kept literally and recorded."""
        manifest = MANIFEST.replace(
            "${policyDefinitions.Deny-Public-IP.id}", "${policyDefinitions.Missing.id}"
        )
        assignment = _by_key(manifest)["PolicyAssignment:platform:deny-pip"]

        assert assignment.properties["policyDefinitionId"] == "${policydefinitions.missing.id}"
        assert assignment.unresolved_references == ("${policyDefinitions.Missing.id}",)
        assert assignment.effect is None

    def test_explicit_depends_on(self) -> None:
        """dependsOn entries become dependency keys; unknown ones are unresolved."""
        manifest = MANIFEST + (
            "networkResources:\n"
            "  - name: hub\n"
            "    scope: 00000000-0000-0000-0000-000000000001\n"
            "    dependsOn: [policyAssignments.deny-pip, networkResources.ghost]\n"
        )
        hub = _by_key(manifest)[
            "NetworkResource:00000000-0000-0000-0000-000000000001:hub"
        ]

        assert hub.depends_on == ("PolicyAssignment:platform:deny-pip",)
        assert hub.unresolved_references == ("dependsOn:networkResources.ghost",)

    def test_wrapped_document(self) -> None:
        """The apiVersion/spec wrapper is accepted."""
        wrapped = "apiVersion: brownfield/v1\nkind: DesiredState\nspec:\n" + "\n".join(
            f"  {line}" for line in MANIFEST.strip().splitlines()
        )

        assert len(load_manifest_text(wrapped).entities) == 6

    def test_source_hash_tracks_content(self) -> None:
        """The manifest hash changes with its text."""
        a = load_manifest_text(MANIFEST)
        b = load_manifest_text(MANIFEST + "\n# comment\n")

        assert a.source_hash.startswith("sha256:")
        assert a.source_hash != b.source_hash
        assert a.entities == b.entities

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Files are read through the same parser."""
        path = tmp_path / "platform.yaml"
        path.write_text(MANIFEST)

        assert len(load_manifest(path).entities) == 6


class TestManifestErrors:
    """Tests for rejected manifests."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing manifest is fatal."""
        with pytest.raises(ManifestParseError, match="not found"):
            load_manifest(tmp_path / "missing.yaml")

    def test_invalid_yaml(self) -> None:
        """Broken YAML is fatal."""
        with pytest.raises(ManifestParseError, match="Invalid YAML"):
            load_manifest_text("managementGroups: [")

    def test_unknown_collection(self) -> None:
        """Unknown top-level keys are rejected."""
        with pytest.raises(ManifestParseError, match="Validation failed"):
            load_manifest_text("virtualMachines: []")

    def test_missing_required_field(self) -> None:
        """Required placement fields are enforced."""
        with pytest.raises(ManifestParseError, match="scope"):
            load_manifest_text("policyDefinitions:\n  - name: x\n")

    def test_duplicate_names(self) -> None:
        """Names must be unique within a collection."""
        with pytest.raises(ManifestParseError, match="Duplicate name 'alz'"):
            load_manifest_text("managementGroups:\n  - name: alz\n  - name: alz\n")

    def test_hierarchy_cycle(self) -> None:
        """Management group parent cycles are rejected."""
        manifest = (
            "managementGroups:\n"
            "  - name: a\n    parent: b\n"
            "  - name: b\n    parent: a\n"
        )

        with pytest.raises(ManifestParseError, match="hierarchy"):
            load_manifest_text(manifest)

    def test_dependency_cycle(self) -> None:
        """dependsOn cycles are rejected."""
        manifest = (
            "networkResources:\n"
            "  - name: a\n    scope: sub\n    dependsOn: [networkResources.b]\n"
            "  - name: b\n    scope: sub\n    dependsOn: [networkResources.a]\n"
        )

        with pytest.raises(ManifestParseError, match="Dependency cycle"):
            load_manifest_text(manifest)


class TestLoadOverrides:
    """Tests for operator override files."""

    def test_load(self, tmp_path: Path) -> None:
        """Overrides are validated into models."""
        path = tmp_path / "overrides.yaml"
        path.write_text(
            "overrides:\n"
            "  - entityKey: 'PolicyExemption:alz:legacy'\n"
            "    action: Detach\n"
            "    reason: replaced\n"
            "    approvedBy: platform-team\n"
        )

        (override,) = load_overrides(path)

        assert override.entity_key == "PolicyExemption:alz:legacy"
        assert override.action == SuggestedAction.DETACH

    def test_duplicate_keys(self, tmp_path: Path) -> None:
        """Two decisions for one entity are rejected."""
        entry = (
            "  - entityKey: 'PolicyExemption:alz:legacy'\n"
            "    action: Detach\n"
            "    reason: replaced\n"
            "    approvedBy: platform-team\n"
        )
        path = tmp_path / "overrides.yaml"
        path.write_text("overrides:\n" + entry + entry)

        with pytest.raises(ManifestParseError, match="Duplicate overrides"):
            load_overrides(path)

    def test_missing_approver(self, tmp_path: Path) -> None:
        """An override without approvedBy is invalid."""
        path = tmp_path / "overrides.yaml"
        path.write_text(
            "overrides:\n  - entityKey: 'a'\n    action: Adopt\n    reason: ok\n"
        )

        with pytest.raises(ManifestParseError, match="approvedBy"):
            load_overrides(path)
