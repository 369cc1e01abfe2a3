"""Tests for the Azure adapter with the SDK clients mocked out."""

from collections.abc import Iterator
from unittest import mock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from brownfield.azure_control_plane import (
    OWNERSHIP_MARKER_KEY,
    OWNERSHIP_MARKER_VALUE,
    AzureControlPlane,
    map_azure_error,
)
from brownfield.config import ConfigurationError, TenantConfig
from brownfield.control_plane import ControlPlaneError, ErrorKind
from brownfield.manifest import load_manifest_text
from brownfield.models import EntityKind, PolicyEffect, SourceOfTruth
from control_plane_mock import make_entity

TENANT_ID = "11111111-2222-3333-4444-555555555555"
SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
OWNER_ROLE_ID = "8e3af657-a8ff-443c-a75c-2fe8c4bcb635"


def _http_error(status: int) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status}")
    error.status_code = status
    return error


@pytest.fixture
def azure_config() -> TenantConfig:
    return TenantConfig(
        tenant_id=TENANT_ID, root_scope_id="tenant-root", subscription_id=SUBSCRIPTION_ID
    )


@pytest.fixture
def clients() -> Iterator[tuple[mock.MagicMock, mock.MagicMock]]:
    with (
        mock.patch("brownfield.azure_control_plane.ResourceGraphClient") as graph_cls,
        mock.patch("brownfield.azure_control_plane.ResourceManagementClient") as resources_cls,
    ):
        yield graph_cls.return_value, resources_cls.return_value


@pytest.fixture
def plane(azure_config: TenantConfig, clients: tuple) -> AzureControlPlane:
    return AzureControlPlane(mock.MagicMock(), azure_config)


def _rows(graph: mock.MagicMock, *rows: dict, skip_token: str | None = None) -> None:
    graph.resources.return_value = mock.Mock(data=list(rows), skip_token=skip_token)


class TestMapAzureError:
    """Tests for the SDK exception mapping."""

    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (ResourceNotFoundError("gone"), ErrorKind.NOT_FOUND),
            (ResourceExistsError("exists"), ErrorKind.CONFLICT),
            (ClientAuthenticationError("no token"), ErrorKind.AUTHORIZATION_DENIED),
            (ServiceRequestError("connection reset"), ErrorKind.TRANSIENT),
            (_http_error(403), ErrorKind.AUTHORIZATION_DENIED),
            (_http_error(404), ErrorKind.NOT_FOUND),
            (_http_error(409), ErrorKind.CONFLICT),
            (_http_error(429), ErrorKind.TRANSIENT),
            (_http_error(503), ErrorKind.TRANSIENT),
            (_http_error(400), ErrorKind.UNKNOWN),
        ],
    )
    def test_mapping(self, error: Exception, kind: ErrorKind) -> None:
        """Each SDK failure lands in one taxonomy bucket."""
        assert map_azure_error(error).kind == kind


class TestConstruction:
    """Tests for adapter construction."""

    def test_requires_subscription(self, clients: tuple) -> None:
        """The ARM client needs a subscription id."""
        config = TenantConfig(tenant_id=TENANT_ID, root_scope_id="tenant-root")

        with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID"):
            AzureControlPlane(mock.MagicMock(), config)


class TestReads:
    """Tests for Resource Graph reads."""

    @pytest.mark.asyncio
    async def test_management_group_row(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Management groups are scoped under their parent."""
        graph, _ = clients
        _rows(
            graph,
            {
                "name": "corp",
                "properties": {
                    "displayName": "Corp",
                    "details": {"parent": {"name": "landing-zones"}},
                },
            },
            skip_token="next",
        )

        page = await plane.list_page("landing-zones", EntityKind.MANAGEMENT_GROUP)

        (entity,) = page.items
        assert entity.key == "ManagementGroup:landing-zones:corp"
        assert entity.source_of_truth == SourceOfTruth.OBSERVED
        assert entity.properties == {"displayName": "Corp"}
        assert page.continuation_token == "next"
        request = graph.resources.call_args.args[0]
        assert request.management_groups == ["tenant-root"]

    @pytest.mark.asyncio
    async def test_role_assignment_row(self, plane: AzureControlPlane, clients: tuple) -> None:
        """Role and principal are lifted out of the row."""
        graph, _ = clients
        _rows(
            graph,
            {
                "name": "ra-1",
                "properties": {
                    "principalId": "9f0c0c44-0000-0000-0000-000000000000",
                    "roleDefinitionId": (
                        f"/providers/Microsoft.Authorization/roleDefinitions/{OWNER_ROLE_ID}"
                    ),
                },
            },
        )

        (entity,) = (await plane.list_page("corp", EntityKind.ROLE_ASSIGNMENT)).items

        assert entity.role_definition_name == OWNER_ROLE_ID
        assert entity.principal_id == "9f0c0c44-0000-0000-0000-000000000000"

    @pytest.mark.asyncio
    async def test_assignment_effect_from_parameters(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """A policy assignment's effect parameter becomes its effect."""
        graph, _ = clients
        _rows(graph, {"name": "deny-pip", "properties": {"parameters": {"effect": {"value": "deny"}}}})

        (entity,) = (await plane.list_page("corp", EntityKind.POLICY_ASSIGNMENT)).items

        assert entity.effect == PolicyEffect.DENY

    @pytest.mark.asyncio
    async def test_network_resources_only_under_subscriptions(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Management groups hold no network resources; no query is sent."""
        graph, _ = clients

        page = await plane.list_page("corp", EntityKind.NETWORK_RESOURCE)

        assert page.items == []
        graph.resources.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_not_found(self, plane: AzureControlPlane, clients: tuple) -> None:
        """An empty result is NotFound."""
        graph, _ = clients
        _rows(graph)

        with pytest.raises(ControlPlaneError) as exc_info:
            await plane.get("", EntityKind.MANAGEMENT_GROUP, "tenant-root")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_rejects_unsafe_scope(self, plane: AzureControlPlane, clients: tuple) -> None:
        """Scope ids outside the id alphabet never reach a query."""
        graph, _ = clients

        with pytest.raises(ControlPlaneError, match="Invalid scope identifier"):
            await plane.list_page("corp' or 1==1", EntityKind.POLICY_ASSIGNMENT)

        graph.resources.assert_not_called()

    @pytest.mark.asyncio
    async def test_sdk_error_is_mapped(self, plane: AzureControlPlane, clients: tuple) -> None:
        """Throttling surfaces as a transient control-plane error."""
        graph, _ = clients
        graph.resources.side_effect = _http_error(429)

        with pytest.raises(ControlPlaneError) as exc_info:
            await plane.list_page("corp", EntityKind.POLICY_DEFINITION)

        assert exc_info.value.kind == ErrorKind.TRANSIENT


class TestWrites:
    """Tests for ARM by-ID writes."""

    @pytest.mark.asyncio
    async def test_create_sets_ownership_marker(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Policy entities carry the marker in their metadata."""
        _, resources = clients
        assignment = make_entity(
            EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp", {"displayName": "Deny PIP"}
        )

        await plane.create_or_update(assignment)

        target, _, body = resources.resources.begin_create_or_update_by_id.call_args.args
        assert target.endswith("/policyAssignments/deny-pip")
        assert "managementGroups/corp" in target
        assert body.properties["metadata"][OWNERSHIP_MARKER_KEY] == OWNERSHIP_MARKER_VALUE

    @pytest.mark.asyncio
    async def test_subscription_create_is_placement(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Subscriptions are placed under their management group, never created."""
        _, resources = clients
        subscription = make_entity(EntityKind.SUBSCRIPTION, SUBSCRIPTION_ID, "corp")

        await plane.create_or_update(subscription)

        target = resources.resources.begin_create_or_update_by_id.call_args.args[0]
        assert target.endswith(f"managementGroups/corp/subscriptions/{SUBSCRIPTION_ID}")

    @pytest.mark.asyncio
    async def test_delete_not_found(self, plane: AzureControlPlane, clients: tuple) -> None:
        """A vanished entity maps to NotFound."""
        _, resources = clients
        resources.resources.begin_delete_by_id.side_effect = ResourceNotFoundError("gone")

        with pytest.raises(ControlPlaneError) as exc_info:
            await plane.delete(make_entity(EntityKind.POLICY_DEFINITION, "legacy", "corp"))

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_detach_removes_marker_only(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Detach rewrites the entity without the marker and keeps other metadata."""
        _, resources = clients
        resources.resources.get_by_id.return_value = mock.Mock(
            location=None,
            tags=None,
            properties={
                "displayName": "Deny PIP",
                "metadata": {OWNERSHIP_MARKER_KEY: OWNERSHIP_MARKER_VALUE, "category": "Network"},
            },
        )

        await plane.detach_ownership(make_entity(EntityKind.POLICY_ASSIGNMENT, "deny-pip", "corp"))

        body = resources.resources.begin_create_or_update_by_id.call_args.args[2]
        assert body.properties["metadata"] == {"category": "Network"}
        assert body.properties["displayName"] == "Deny PIP"

    @pytest.mark.asyncio
    async def test_detach_without_marker_kind_is_noop(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Role assignments carry no marker; detach only checks existence."""
        graph, resources = clients
        _rows(graph, {"name": "ra-1", "properties": {}})

        await plane.detach_ownership(make_entity(EntityKind.ROLE_ASSIGNMENT, "ra-1", "corp"))

        resources.resources.begin_create_or_update_by_id.assert_not_called()


PARITY_MANIFEST = """
rootScope: tenant-root
managementGroups:
  - name: alz
    displayName: Azure Landing Zones
policyDefinitions:
  - name: Deny-Public-IP
    scope: alz
    properties:
      mode: All
      displayName: Deny public IP
      parameters:
        effect:
          type: String
          defaultValue: Deny
          allowedValues: [Audit, Deny, Disabled]
      policyRule:
        if:
          field: type
          equals: Microsoft.Network/publicIPAddresses
        then:
          effect: "[parameters('effect')]"
policyAssignments:
  - name: deny-pip
    scope: alz
    displayName: Deny public IP
    policyDefinition: ${policyDefinitions.Deny-Public-IP.id}
    parameters:
      effect: Deny
roleAssignments:
  - name: ra-netops
    scope: alz
    principalId: 9f0c0c44-0000-0000-0000-000000000000
    roleDefinitionName: Network Contributor
"""

MG_PREFIX = "/providers/Microsoft.Management/managementGroups/alz"
SERVER_STAMPS = {
    "createdBy": "someone@contoso.com",
    "createdOn": "2024-02-01T10:00:00Z",
    "updatedBy": None,
    "updatedOn": None,
}

DEFINITION_ROW = {
    "name": "Deny-Public-IP",
    "properties": {
        "policyType": "Custom",
        "mode": "All",
        "displayName": "Deny public IP",
        "metadata": {**SERVER_STAMPS, OWNERSHIP_MARKER_KEY: OWNERSHIP_MARKER_VALUE},
        "parameters": {
            "effect": {
                "type": "String",
                "defaultValue": "Deny",
                "allowedValues": ["Audit", "Deny", "Disabled"],
            }
        },
        "policyRule": {
            "if": {"field": "type", "equals": "Microsoft.Network/publicIPAddresses"},
            "then": {"effect": "[parameters('effect')]"},
        },
    },
}
ASSIGNMENT_ROW = {
    "name": "deny-pip",
    "properties": {
        "displayName": "Deny public IP",
        "policyDefinitionId": (
            "/providers/microsoft.management/managementGroups/alz"
            "/providers/Microsoft.Authorization/policyDefinitions/Deny-Public-IP"
        ),
        "scope": MG_PREFIX,
        "notScopes": [],
        "enforcementMode": "Default",
        "parameters": {"effect": {"value": "Deny"}},
        "metadata": {"assignedBy": "Platform Team", **SERVER_STAMPS},
    },
}
ROLE_ASSIGNMENT_ROW = {
    "name": "ra-netops",
    "properties": {
        "principalId": "9f0c0c44-0000-0000-0000-000000000000",
        "principalType": "ServicePrincipal",
        "roleDefinitionId": (
            f"{MG_PREFIX}/providers/Microsoft.Authorization/roleDefinitions/"
            "4d97b98b-1d4f-4787-a291-c67834d212e7"
        ),
        "scope": MG_PREFIX,
        "condition": None,
        **SERVER_STAMPS,
    },
}
MANAGEMENT_GROUP_ROW = {
    "name": "alz",
    "properties": {
        "displayName": "Azure Landing Zones",
        "details": {"parent": {"name": "tenant-root"}},
    },
}


class TestManifestParity:
    """An adapter row and the matching manifest item must compare equal."""

    @pytest.mark.parametrize(
        ("kind", "scope", "row"),
        [
            (EntityKind.POLICY_DEFINITION, "alz", DEFINITION_ROW),
            (EntityKind.POLICY_ASSIGNMENT, "alz", ASSIGNMENT_ROW),
            (EntityKind.ROLE_ASSIGNMENT, "alz", ROLE_ASSIGNMENT_ROW),
            (EntityKind.MANAGEMENT_GROUP, "tenant-root", MANAGEMENT_GROUP_ROW),
        ],
    )
    @pytest.mark.asyncio
    async def test_same_payload_hash(
        self, plane: AzureControlPlane, clients: tuple, kind: EntityKind, scope: str, row: dict
    ) -> None:
        """A converged entity has the same hash on both sides."""
        graph, _ = clients
        _rows(graph, row)
        declared = {e.key: e for e in load_manifest_text(PARITY_MANIFEST).entities}

        (observed,) = (await plane.list_page(scope, kind)).items

        assert observed.key in declared
        assert observed.properties == declared[observed.key].properties
        assert observed.payload_hash == declared[observed.key].payload_hash

    @pytest.mark.asyncio
    async def test_definition_effect_from_parameter_default(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Both sides read the effect through the parameter's default value."""
        graph, _ = clients
        _rows(graph, DEFINITION_ROW)
        declared = {e.key: e for e in load_manifest_text(PARITY_MANIFEST).entities}

        (observed,) = (await plane.list_page("alz", EntityKind.POLICY_DEFINITION)).items

        assert observed.effect == PolicyEffect.DENY
        assert declared[observed.key].effect == PolicyEffect.DENY

    @pytest.mark.asyncio
    async def test_write_uses_arm_property_names(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """Declared entities are written with ARM names and a full role definition id."""
        _, resources = clients
        declared = {e.key: e for e in load_manifest_text(PARITY_MANIFEST).entities}

        await plane.create_or_update(declared["RoleAssignment:alz:ra-netops"])

        body = resources.resources.begin_create_or_update_by_id.call_args.args[2]
        assert "roleDefinitionName" not in body.properties
        assert body.properties["roleDefinitionId"] == (
            "/providers/Microsoft.Authorization/roleDefinitions/"
            "4d97b98b-1d4f-4787-a291-c67834d212e7"
        )
        assert body.properties["principalId"] == "9f0c0c44-0000-0000-0000-000000000000"

    @pytest.mark.asyncio
    async def test_management_group_written_under_parent(
        self, plane: AzureControlPlane, clients: tuple
    ) -> None:
        """A created management group names its parent."""
        _, resources = clients
        declared = {e.key: e for e in load_manifest_text(PARITY_MANIFEST).entities}

        await plane.create_or_update(declared["ManagementGroup:tenant-root:alz"])

        body = resources.resources.begin_create_or_update_by_id.call_args.args[2]
        assert body.properties["details"] == {
            "parent": {"id": "/providers/Microsoft.Management/managementGroups/tenant-root"}
        }
