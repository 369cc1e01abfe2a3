"""Azure adapter for the ControlPlane interface.

READS go through Azure Resource Graph, scoped to the root management group:
- resourcecontainers: management groups and subscriptions
- policyresources: policy definitions, set definitions, assignments, exemptions
- authorizationresources: role definitions and role assignments
- resources: network resources (subscription scope only)

WRITES go through the generic by-ID operations of ResourceManagementClient, so
one code path covers every entity kind. Subscriptions are never created; their
"create" is placement under a management group.

OWNERSHIP:
Managed entities carry a ``managedBy`` marker (policy metadata, or a tag on
network resources). Detach removes the marker and leaves the entity in place.

SECURITY:
- Credentials come from security.managed_identity_credential only
- Scope identifiers are validated before being embedded in KQL
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import (
    VALID_SCOPE_ID_PATTERN,
    VALID_TENANT_ID_PATTERN,
    ConfigurationError,
    TenantConfig,
)
from .control_plane import ControlPlane, ControlPlaneError, ErrorKind, Page
from .models import (
    DEFAULT_NETWORK_RESOURCE_TYPE,
    RESOURCE_PROVIDER_TYPES,
    EntityKind,
    ManagedEntity,
    PolicyEffect,
    SourceOfTruth,
    resource_id,
    scope_resource_id,
)
from .payload import canonical_properties, normalize_payload, payload_hash, policy_rule_effect
from .security import audit_mutation

logger = logging.getLogger(__name__)

T = TypeVar("T")

OWNERSHIP_MARKER_KEY = "managedBy"
OWNERSHIP_MARKER_VALUE = "alz-brownfield"

# Rows per Resource Graph page (service maximum is 1000)
GRAPH_PAGE_SIZE = 1000

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
AUTHORIZATION_STATUS_CODES = frozenset({401, 403})

API_VERSIONS: dict[EntityKind, str] = {
    EntityKind.MANAGEMENT_GROUP: "2021-04-01",
    EntityKind.SUBSCRIPTION: "2021-04-01",
    EntityKind.POLICY_DEFINITION: "2021-06-01",
    EntityKind.POLICY_SET_DEFINITION: "2021-06-01",
    EntityKind.POLICY_ASSIGNMENT: "2022-06-01",
    EntityKind.POLICY_EXEMPTION: "2022-07-01-preview",
    EntityKind.ROLE_DEFINITION: "2022-04-01",
    EntityKind.ROLE_ASSIGNMENT: "2022-04-01",
    EntityKind.NETWORK_RESOURCE: "2023-09-01",
}

GRAPH_TABLES: dict[EntityKind, str] = {
    EntityKind.MANAGEMENT_GROUP: "resourcecontainers",
    EntityKind.SUBSCRIPTION: "resourcecontainers",
    EntityKind.POLICY_DEFINITION: "policyresources",
    EntityKind.POLICY_SET_DEFINITION: "policyresources",
    EntityKind.POLICY_ASSIGNMENT: "policyresources",
    EntityKind.POLICY_EXEMPTION: "policyresources",
    EntityKind.ROLE_DEFINITION: "authorizationresources",
    EntityKind.ROLE_ASSIGNMENT: "authorizationresources",
    EntityKind.NETWORK_RESOURCE: "resources",
}

MANAGEMENT_GROUP_TYPE = "microsoft.management/managementgroups"
SUBSCRIPTION_TYPE = "microsoft.resources/subscriptions"

# Kinds whose ownership marker lives in properties.metadata
METADATA_MARKER_KINDS = frozenset(
    {
        EntityKind.POLICY_DEFINITION,
        EntityKind.POLICY_SET_DEFINITION,
        EntityKind.POLICY_ASSIGNMENT,
        EntityKind.POLICY_EXEMPTION,
    }
)


def map_azure_error(error: AzureError) -> ControlPlaneError:
    """Map an Azure SDK exception onto the control-plane error taxonomy."""
    message = str(error) or type(error).__name__
    if isinstance(error, ResourceNotFoundError):
        return ControlPlaneError(ErrorKind.NOT_FOUND, message)
    if isinstance(error, ResourceExistsError):
        return ControlPlaneError(ErrorKind.CONFLICT, message)
    if isinstance(error, ClientAuthenticationError):
        return ControlPlaneError(ErrorKind.AUTHORIZATION_DENIED, message)
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return ControlPlaneError(ErrorKind.TRANSIENT, message)
    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status in AUTHORIZATION_STATUS_CODES:
            return ControlPlaneError(ErrorKind.AUTHORIZATION_DENIED, message)
        if status == 404:
            return ControlPlaneError(ErrorKind.NOT_FOUND, message)
        if status == 409:
            return ControlPlaneError(ErrorKind.CONFLICT, message)
        if status in TRANSIENT_STATUS_CODES:
            return ControlPlaneError(ErrorKind.TRANSIENT, message)
    return ControlPlaneError(ErrorKind.UNKNOWN, message)


def _is_subscription_id(scope: str) -> bool:
    return bool(re.match(VALID_TENANT_ID_PATTERN, scope.lower()))


def _last_segment(value: Any) -> str | None:
    if not value:
        return None
    return str(value).rstrip("/").rsplit("/", 1)[-1]


class AzureControlPlane(ControlPlane):
    """ControlPlane backed by Resource Graph reads and ARM by-ID writes.

    All SDK clients are synchronous; every call runs in the default executor.
    Timeouts are applied by the caller through ``control_plane.with_timeout``.
    """

    def __init__(self, credential: TokenCredential, config: TenantConfig) -> None:
        if not config.subscription_id:
            raise ConfigurationError(
                "AZURE_SUBSCRIPTION_ID is required for the Azure control plane"
            )
        self._config = config
        self._graph = ResourceGraphClient(credential=credential)
        self._resources = ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, scope: str, kind: EntityKind, name: str) -> ManagedEntity:
        _validate_scope(name)
        if scope:
            _validate_scope(scope)
        name_field = "subscriptionId" if kind == EntityKind.SUBSCRIPTION else "name"
        query = self._base_query(kind) + f"| where {name_field} =~ '{name}'\n"
        if not kind.is_scope:
            query += self._scope_filter(scope, kind)
        rows, _ = await self._query(query)
        if not rows:
            raise ControlPlaneError(
                ErrorKind.NOT_FOUND, f"{kind.value} '{name}' not found at '{scope or '<tenant>'}'"
            )
        return self._to_entity(kind, rows[0], scope)

    async def list_page(
        self,
        scope: str,
        kind: EntityKind,
        continuation_token: str | None = None,
    ) -> Page:
        _validate_scope(scope)
        if kind == EntityKind.NETWORK_RESOURCE and not _is_subscription_id(scope):
            return Page()
        if kind.is_scope and _is_subscription_id(scope):
            return Page()

        query = self._base_query(kind) + self._scope_filter(scope, kind) + "| order by name asc"
        rows, token = await self._query(query, continuation_token)
        return Page(
            items=[self._to_entity(kind, row, scope) for row in rows],
            continuation_token=token,
        )

    def _base_query(self, kind: EntityKind) -> str:
        table = GRAPH_TABLES[kind]
        if kind == EntityKind.MANAGEMENT_GROUP:
            type_name = MANAGEMENT_GROUP_TYPE
        elif kind == EntityKind.SUBSCRIPTION:
            type_name = SUBSCRIPTION_TYPE
        elif kind == EntityKind.NETWORK_RESOURCE:
            type_name = DEFAULT_NETWORK_RESOURCE_TYPE.lower()
        else:
            type_name = RESOURCE_PROVIDER_TYPES[kind].lower()
        return f"{table}\n| where type =~ '{type_name}'\n"

    def _scope_filter(self, scope: str, kind: EntityKind) -> str:
        if kind == EntityKind.MANAGEMENT_GROUP:
            return f"| where tostring(properties.details.parent.name) =~ '{scope}'\n"
        if kind == EntityKind.SUBSCRIPTION:
            return (
                "| where tostring(properties.managementGroupAncestorsChain[0].name) "
                f"=~ '{scope}'\n"
            )
        if kind == EntityKind.NETWORK_RESOURCE:
            return f"| where subscriptionId =~ '{scope}'\n"
        prefix = scope_resource_id(scope, subscription=_is_subscription_id(scope))
        provider_type = RESOURCE_PROVIDER_TYPES[kind]
        return f"| where id startswith '{prefix}/providers/{provider_type}/'\n"

    async def _query(
        self, query: str, skip_token: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        request = QueryRequest(
            management_groups=[self._config.root_scope_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=GRAPH_PAGE_SIZE,
                skip_token=skip_token,
            ),
        )
        response = await self._run(lambda: self._graph.resources(request), "graph_query")
        data = response.data if isinstance(response.data, list) else []
        return data, response.skip_token or None

    def _to_entity(self, kind: EntityKind, row: dict[str, Any], scope: str) -> ManagedEntity:
        properties: dict[str, Any] = dict(row.get("properties") or {})
        name = str(row.get("name", ""))

        if kind == EntityKind.MANAGEMENT_GROUP:
            parent = (properties.get("details") or {}).get("parent") or {}
            scope = str(parent.get("name") or "")
            properties = {"displayName": properties.get("displayName", name)}
        elif kind == EntityKind.SUBSCRIPTION:
            chain = properties.get("managementGroupAncestorsChain") or [{}]
            scope = str(chain[0].get("name") or scope)
            name = str(row.get("subscriptionId") or name)
            properties = {}
        elif kind == EntityKind.NETWORK_RESOURCE:
            properties = {
                "resourceType": row.get("type"),
                "resourceGroup": row.get("resourceGroup"),
                "location": row.get("location"),
                "tags": row.get("tags"),
                **properties,
            }

        # Assignments without an effect parameter inherit the definition's
        # effect once the whole snapshot is known (see inventory)
        effect = None
        if kind == EntityKind.POLICY_DEFINITION:
            effect = policy_rule_effect(properties)
        elif kind == EntityKind.POLICY_ASSIGNMENT:
            parameter = (properties.get("parameters") or {}).get("effect") or {}
            effect = PolicyEffect.parse(
                parameter.get("value") if isinstance(parameter, dict) else parameter
            )

        principal_id = properties.get("principalId") or (row.get("identity") or {}).get(
            "principalId"
        )
        normalized = normalize_payload(kind, canonical_properties(kind, properties, name))
        return ManagedEntity(
            kind=kind,
            name=name,
            scope=scope,
            source_of_truth=SourceOfTruth.OBSERVED,
            payload_hash=payload_hash(kind, normalized),
            properties=normalized,
            effect=effect,
            principal_id=str(principal_id) if principal_id else None,
            role_definition_name=_last_segment(properties.get("roleDefinitionId")),
            policy_assignment=_last_segment(properties.get("policyAssignmentId")),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_or_update(self, entity: ManagedEntity) -> ManagedEntity:
        target = self._resource_id(entity)
        api_version = API_VERSIONS[entity.kind]

        if entity.kind == EntityKind.SUBSCRIPTION:
            placement = f"{scope_resource_id(entity.scope)}/subscriptions/{entity.name}"
            await self._mutate(
                "place_subscription",
                placement,
                lambda: self._resources.resources.begin_create_or_update_by_id(
                    placement, api_version, GenericResource(properties={})
                ).result(),
            )
            return entity

        body = self._with_marker(entity)
        await self._mutate(
            "create_or_update",
            target,
            lambda: self._resources.resources.begin_create_or_update_by_id(
                target, api_version, body
            ).result(),
        )
        return entity

    async def delete(self, entity: ManagedEntity) -> None:
        if entity.kind == EntityKind.SUBSCRIPTION:
            target = f"{scope_resource_id(entity.scope)}/subscriptions/{entity.name}"
        else:
            target = self._resource_id(entity)
        api_version = API_VERSIONS[entity.kind]
        await self._mutate(
            "delete",
            target,
            lambda: self._resources.resources.begin_delete_by_id(target, api_version).result(),
        )

    async def detach_ownership(self, entity: ManagedEntity) -> None:
        if entity.kind not in METADATA_MARKER_KINDS and entity.kind != EntityKind.NETWORK_RESOURCE:
            # No marker is written for these kinds; existence is all there is to check
            await self.get(entity.scope, entity.kind, entity.name)
            audit_mutation("detach", self._resource_id(entity), "noop")
            return

        target = self._resource_id(entity)
        api_version = API_VERSIONS[entity.kind]
        current = await self._run(
            lambda: self._resources.resources.get_by_id(target, api_version), "get_by_id"
        )
        properties = dict(current.properties or {})
        tags = dict(current.tags or {})
        metadata = dict(properties.get("metadata") or {})
        metadata.pop(OWNERSHIP_MARKER_KEY, None)
        if metadata:
            properties["metadata"] = metadata
        else:
            properties.pop("metadata", None)
        tags.pop(OWNERSHIP_MARKER_KEY, None)

        body = GenericResource(location=current.location, properties=properties, tags=tags or None)
        await self._mutate(
            "detach",
            target,
            lambda: self._resources.resources.begin_create_or_update_by_id(
                target, api_version, body
            ).result(),
        )

    def _resource_id(self, entity: ManagedEntity) -> str:
        return resource_id(
            entity.kind,
            entity.name,
            entity.scope,
            subscription_scope=_is_subscription_id(entity.scope),
            resource_type=entity.properties.get("resourceType"),
            resource_group=entity.properties.get("resourceGroup"),
        )

    def _with_marker(self, entity: ManagedEntity) -> GenericResource:
        properties = {
            k: v
            for k, v in entity.properties.items()
            if k not in ("resourceType", "resourceGroup", "location", "tags")
        }
        tags = dict(entity.properties.get("tags") or {})
        if entity.kind == EntityKind.MANAGEMENT_GROUP and entity.scope:
            properties["details"] = {"parent": {"id": scope_resource_id(entity.scope)}}
        elif entity.kind == EntityKind.ROLE_ASSIGNMENT and properties.get("roleDefinitionId"):
            properties["roleDefinitionId"] = self._role_definition_id(
                entity, properties["roleDefinitionId"]
            )
        if entity.kind in METADATA_MARKER_KINDS:
            metadata = dict(properties.get("metadata") or {})
            metadata[OWNERSHIP_MARKER_KEY] = OWNERSHIP_MARKER_VALUE
            properties["metadata"] = metadata
        elif entity.kind == EntityKind.NETWORK_RESOURCE:
            tags[OWNERSHIP_MARKER_KEY] = OWNERSHIP_MARKER_VALUE
        return GenericResource(
            location=entity.properties.get("location"),
            properties=properties,
            tags=tags or None,
        )

    def _role_definition_id(self, entity: ManagedEntity, role: str) -> str:
        """Full role definition id for a GUID held in canonical properties."""
        if "/" in role:
            return role
        prefix = f"/subscriptions/{entity.scope}" if _is_subscription_id(entity.scope) else ""
        return f"{prefix}/providers/{RESOURCE_PROVIDER_TYPES[EntityKind.ROLE_DEFINITION]}/{role}"

    async def _mutate(self, operation: str, target: str, call: Callable[[], Any]) -> None:
        try:
            await self._run(call, operation)
        except ControlPlaneError as e:
            audit_mutation(operation, target, "failure", e.kind.value)
            raise
        audit_mutation(operation, target, "success")

    async def _run(self, call: Callable[[], T], operation: str) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, call)
        except AzureError as e:
            mapped = map_azure_error(e)
            logger.warning(
                "Azure call failed",
                extra={"operation": operation, "error_kind": mapped.kind.value, "error": str(e)},
            )
            raise mapped from e


def _validate_scope(scope: str) -> None:
    """Scope ids are embedded in KQL; reject anything outside the id alphabet."""
    if not re.match(VALID_SCOPE_ID_PATTERN, scope):
        raise ControlPlaneError(ErrorKind.UNKNOWN, f"Invalid scope identifier: {scope!r}")
