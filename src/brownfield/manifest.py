"""Desired-state manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

The manifest is YAML, either flat or wrapped Kubernetes-style:

```yaml
apiVersion: brownfield/v1
kind: DesiredState
spec:
  rootScope: tenant-root
  managementGroups:
    - name: alz
    - name: platform
      parent: alz
  policyDefinitions:
    - name: Deny-Public-IP
      scope: alz
      effect: Deny
  policyAssignments:
    - name: deny-pip
      scope: platform
      policyDefinition: ${policyDefinitions.Deny-Public-IP.id}
```

References use ``${<collection>.<name>.<attr>}`` where attr is ``id``,
``name``, ``scope``, ``effect`` or ``properties.<key>``. A reference that
cannot be resolved stays in place as literal text and is recorded on the
entity so the classifier reports it; it is never dropped.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .errors import ClassificationInvariantViolation, ManifestParseError
from .models import (
    DesiredSet,
    EntityKind,
    ManagedEntity,
    OperatorOverride,
    PolicyEffect,
    ScopeNode,
    SourceOfTruth,
    entity_key,
    resource_id,
)
from .payload import canonical_properties, normalize_payload, payload_hash, policy_rule_effect
from .scope_tree import ScopeTree

logger = logging.getLogger(__name__)

MAX_OVERRIDES_FILE_SIZE_BYTES = 512 * 1024
MAX_REFERENCE_DEPTH = 16

REFERENCE_PATTERN = re.compile(r"\$\{([A-Za-z]+)\.([^.}\s]+)\.([A-Za-z0-9_.]+)\}")
SUBSCRIPTION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


# =============================================================================
# Manifest schema
# =============================================================================


class ManifestItem(BaseModel):
    """Common fields; unknown keys are kept as declared properties."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: Annotated[str, Field(min_length=1, max_length=128, pattern=r"^[^.${}\s]+$")]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class ManagementGroupItem(ManifestItem):
    display_name: str | None = Field(None, alias="displayName")
    parent: str | None = None


class SubscriptionItem(ManifestItem):
    display_name: str | None = Field(None, alias="displayName")
    management_group: Annotated[str, Field(min_length=1, alias="managementGroup")]


class ScopedItem(ManifestItem):
    scope: Annotated[str, Field(min_length=1)]
    properties: dict[str, Any] = Field(default_factory=dict)


class PolicyDefinitionItem(ScopedItem):
    effect: str | None = None


class PolicySetDefinitionItem(ScopedItem):
    policy_definitions: list[str] = Field(default_factory=list, alias="policyDefinitions")


class PolicyAssignmentItem(ScopedItem):
    policy_definition: Annotated[str, Field(min_length=1, alias="policyDefinition")]
    parameters: dict[str, Any] = Field(default_factory=dict)
    principal_id: str | None = Field(None, alias="principalId")
    enforcement_mode: str | None = Field(None, alias="enforcementMode")


class PolicyExemptionItem(ScopedItem):
    policy_assignment: Annotated[str, Field(min_length=1, alias="policyAssignment")]
    exemption_category: str = Field("Waiver", alias="exemptionCategory")


class RoleDefinitionItem(ScopedItem):
    pass


class RoleAssignmentItem(ScopedItem):
    principal_id: Annotated[str, Field(min_length=1, alias="principalId")]
    role_definition_name: Annotated[str, Field(min_length=1, alias="roleDefinitionName")]


class NetworkResourceItem(ScopedItem):
    resource_type: str | None = Field(None, alias="resourceType")
    resource_group: str | None = Field(None, alias="resourceGroup")


class ManifestDocument(BaseModel):
    """Top-level manifest content (the ``spec`` section when wrapped)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    root_scope: str | None = Field(None, alias="rootScope")
    management_groups: list[ManagementGroupItem] = Field(
        default_factory=list, alias="managementGroups"
    )
    subscriptions: list[SubscriptionItem] = Field(default_factory=list)
    policy_definitions: list[PolicyDefinitionItem] = Field(
        default_factory=list, alias="policyDefinitions"
    )
    policy_set_definitions: list[PolicySetDefinitionItem] = Field(
        default_factory=list, alias="policySetDefinitions"
    )
    policy_assignments: list[PolicyAssignmentItem] = Field(
        default_factory=list, alias="policyAssignments"
    )
    policy_exemptions: list[PolicyExemptionItem] = Field(
        default_factory=list, alias="policyExemptions"
    )
    role_definitions: list[RoleDefinitionItem] = Field(
        default_factory=list, alias="roleDefinitions"
    )
    role_assignments: list[RoleAssignmentItem] = Field(
        default_factory=list, alias="roleAssignments"
    )
    network_resources: list[NetworkResourceItem] = Field(
        default_factory=list, alias="networkResources"
    )


# Manifest collection name -> (document attribute, entity kind)
COLLECTIONS: dict[str, tuple[str, EntityKind]] = {
    "managementGroups": ("management_groups", EntityKind.MANAGEMENT_GROUP),
    "subscriptions": ("subscriptions", EntityKind.SUBSCRIPTION),
    "policyDefinitions": ("policy_definitions", EntityKind.POLICY_DEFINITION),
    "policySetDefinitions": ("policy_set_definitions", EntityKind.POLICY_SET_DEFINITION),
    "policyAssignments": ("policy_assignments", EntityKind.POLICY_ASSIGNMENT),
    "policyExemptions": ("policy_exemptions", EntityKind.POLICY_EXEMPTION),
    "roleDefinitions": ("role_definitions", EntityKind.ROLE_DEFINITION),
    "roleAssignments": ("role_assignments", EntityKind.ROLE_ASSIGNMENT),
    "networkResources": ("network_resources", EntityKind.NETWORK_RESOURCE),
}

# Fields that place an item in the hierarchy rather than describe it
_PLACEMENT_FIELDS = frozenset({"name", "scope", "parent", "managementGroup", "dependsOn"})


# =============================================================================
# Reference resolution
# =============================================================================


@dataclass
class _Record:
    collection: str
    kind: EntityKind
    raw: dict[str, Any]

    @property
    def name(self) -> str:
        return str(self.raw["name"])


@dataclass
class _Resolution:
    """Outcome of resolving every reference inside one value."""

    value: Any
    references: set[tuple[str, str]] = field(default_factory=set)
    unresolved: set[str] = field(default_factory=set)


class _UnresolvableReference(Exception):
    pass


class _ReferenceResolver:
    """Resolves ``${collection.name.attr}`` against the declared records."""

    def __init__(self, records: dict[tuple[str, str], _Record], root_scope: str | None) -> None:
        self._records = records
        self._root_scope = root_scope
        self._active: list[tuple[str, str, str]] = []
        self._subscription_names = {
            name for (collection, name) in records if collection == "subscriptions"
        }

    def resolve(self, value: Any) -> _Resolution:
        result = _Resolution(value=None)
        result.value = self._resolve_value(value, result)
        return result

    def _resolve_value(self, value: Any, result: _Resolution) -> Any:
        if isinstance(value, dict):
            return {k: self._resolve_value(v, result) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v, result) for v in value]
        if isinstance(value, str):
            return self._resolve_string(value, result)
        return value

    def _resolve_string(self, text: str, result: _Resolution) -> Any:
        whole = REFERENCE_PATTERN.fullmatch(text)
        if whole:
            try:
                return self._lookup(*whole.groups(), result)
            except _UnresolvableReference:
                result.unresolved.add(text)
                return text

        def substitute(match: re.Match[str]) -> str:
            try:
                return str(self._lookup(*match.groups(), result))
            except _UnresolvableReference:
                result.unresolved.add(match.group(0))
                return match.group(0)

        return REFERENCE_PATTERN.sub(substitute, text)

    def _lookup(self, collection: str, name: str, attr: str, result: _Resolution) -> Any:
        record = self._records.get((collection, name))
        if record is None:
            raise _UnresolvableReference()
        marker = (collection, name, attr)
        if marker in self._active or len(self._active) >= MAX_REFERENCE_DEPTH:
            raise _UnresolvableReference()

        self._active.append(marker)
        try:
            value = self.attribute(record, attr, result)
        finally:
            self._active.pop()
        result.references.add((collection, name))
        return value

    def attribute(self, record: _Record, attr: str, result: _Resolution) -> Any:
        if attr == "name":
            return record.name
        if attr == "scope":
            return self.scope_of(record, result)
        if attr == "id":
            return self.id_of(record, result)
        if attr == "effect":
            effect = self.effect_of(record, result)
            if effect is None:
                raise _UnresolvableReference()
            return effect.value
        if attr.startswith("properties."):
            value: Any = record.raw.get("properties", {})
            for part in attr.split(".")[1:]:
                if not isinstance(value, dict) or part not in value:
                    raise _UnresolvableReference()
                value = value[part]
            return self._resolve_value(value, result)
        raise _UnresolvableReference()

    def scope_of(self, record: _Record, result: _Resolution) -> str:
        if record.kind == EntityKind.MANAGEMENT_GROUP:
            raw_scope = record.raw.get("parent") or self._root_scope or ""
        elif record.kind == EntityKind.SUBSCRIPTION:
            raw_scope = record.raw.get("managementGroup", "")
        else:
            raw_scope = record.raw.get("scope", "")
        return str(self._resolve_value(raw_scope, result))

    def is_subscription_scope(self, scope: str) -> bool:
        return scope in self._subscription_names or bool(SUBSCRIPTION_ID_PATTERN.match(scope))

    def id_of(self, record: _Record, result: _Resolution) -> str:
        scope = self.scope_of(record, result)
        return resource_id(
            record.kind,
            record.name,
            scope,
            subscription_scope=self.is_subscription_scope(scope),
            resource_type=record.raw.get("resourceType"),
            resource_group=record.raw.get("resourceGroup"),
        )

    def effect_of(self, record: _Record, result: _Resolution) -> PolicyEffect | None:
        if record.kind == EntityKind.POLICY_DEFINITION:
            declared = PolicyEffect.parse(self._resolve_value(record.raw.get("effect"), result))
            if declared is not None:
                return declared
            # Same derivation as for observed definitions
            source = record.raw.get("properties") or {}
            if "policyRule" not in source:
                source = record.raw
            return policy_rule_effect(self._resolve_value(source, result))
        if record.kind != EntityKind.POLICY_ASSIGNMENT:
            return None

        # parameters.effect overrides the definition's effect
        parameters = record.raw.get("parameters") or {}
        if "effect" in parameters:
            override = self._resolve_value(parameters["effect"], result)
            if isinstance(override, dict):
                override = override.get("value")
            return PolicyEffect.parse(override)

        definition = self._resolve_value(record.raw.get("policyDefinition", ""), result)
        definition_name = str(definition).rstrip("/").rsplit("/", 1)[-1]
        definition_record = self._records.get(("policyDefinitions", definition_name))
        if definition_record is None:
            return None
        return self.effect_of(definition_record, result)

    def key_of(self, collection: str, name: str) -> str | None:
        record = self._records.get((collection, name))
        if record is None:
            return None
        return entity_key(record.kind, record.name, self.scope_of(record, _Resolution(None)))


# =============================================================================
# Loading
# =============================================================================


def load_manifest(path: Path) -> DesiredSet:
    """Load and validate a desired-state manifest.

    Raises:
        ManifestParseError: If the manifest cannot be read, parsed,
            validated, or contains duplicate keys or cycles.
    """
    if not path.exists():
        raise ManifestParseError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestParseError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestParseError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestParseError(f"Failed to read manifest file {path}: {e}") from e

    return load_manifest_text(content, source=str(path))


def load_manifest_text(content: str, source: str = "<string>") -> DesiredSet:
    """Parse manifest YAML text into a DesiredSet."""
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestParseError(f"Invalid YAML in {source}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ManifestParseError(f"Manifest must contain a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise ManifestParseError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        document = ManifestDocument.model_validate(spec_data)
    except ValidationError as e:
        raise ManifestParseError(_format_validation_error(source, e)) from e

    desired = build_desired_set(document)
    desired = desired.model_copy(
        update={"source_hash": "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest()}
    )
    logger.info(
        "Loaded manifest",
        extra={
            "source": source,
            "entities": len(desired.entities),
            "scopes": len(desired.scopes),
            "unresolved": sum(1 for e in desired.entities if e.unresolved_references),
        },
    )
    return desired


def build_desired_set(document: ManifestDocument) -> DesiredSet:
    """Normalize a validated manifest document into ManagedEntities."""
    records: dict[tuple[str, str], _Record] = {}
    for collection, (attribute, kind) in COLLECTIONS.items():
        for item in getattr(document, attribute):
            raw = item.model_dump(by_alias=True, exclude_none=True)
            record = _Record(collection=collection, kind=kind, raw=raw)
            if (collection, record.name) in records:
                raise ManifestParseError(f"Duplicate name '{record.name}' in {collection}")
            records[(collection, record.name)] = record

    resolver = _ReferenceResolver(records, document.root_scope)
    entities = [_build_entity(record, resolver) for record in records.values()]

    seen: set[str] = set()
    for entity in entities:
        if entity.key in seen:
            raise ManifestParseError(f"Duplicate entity in manifest: {entity.key}")
        seen.add(entity.key)

    scopes = [
        ScopeNode(
            id=entity.name,
            parent_id=entity.scope or None,
            display_name=entity.display_name,
            kind=entity.kind,
        )
        for entity in entities
        if entity.kind.is_scope
    ]
    try:
        tree = ScopeTree(scopes)
    except ClassificationInvariantViolation as e:
        raise ManifestParseError(f"Invalid management group hierarchy: {e}") from e

    _check_dependency_cycles(entities)

    return DesiredSet(
        root_id=document.root_scope,
        scopes=tuple(tree.with_children()),
        entities=tuple(sorted(entities, key=lambda e: e.key)),
    )


def _build_entity(record: _Record, resolver: _ReferenceResolver) -> ManagedEntity:
    result = resolver.resolve(
        {k: v for k, v in record.raw.items() if k not in ("name", "dependsOn")}
    )
    resolved: dict[str, Any] = result.value
    scope = resolver.scope_of(record, result)

    # Declared properties: explicit ``properties`` merged with extra item fields
    properties: dict[str, Any] = dict(resolved.pop("properties", {}) or {})
    for key, value in resolved.items():
        if key not in _PLACEMENT_FIELDS:
            properties[key] = value

    depends_on = {
        key
        for key in (resolver.key_of(c, n) for (c, n) in result.references)
        if key is not None
    }
    unresolved = set(result.unresolved)
    for dependency in record.raw.get("dependsOn", []):
        collection, _, name = str(dependency).partition(".")
        key = resolver.key_of(collection, name)
        if key is None:
            unresolved.add(f"dependsOn:{dependency}")
        else:
            depends_on.add(key)

    own_key = entity_key(record.kind, record.name, scope)
    depends_on.discard(own_key)

    effect = resolver.effect_of(record, _Resolution(None))
    principal_id = properties.get("principalId")
    policy_assignment = None
    if record.kind == EntityKind.POLICY_EXEMPTION:
        policy_assignment = str(properties.get("policyAssignment", "")).rstrip("/").rsplit("/", 1)[-1]

    normalized = normalize_payload(
        record.kind, canonical_properties(record.kind, properties, record.name)
    )
    return ManagedEntity(
        kind=record.kind,
        name=record.name,
        scope=scope,
        source_of_truth=SourceOfTruth.DECLARED,
        payload_hash=payload_hash(record.kind, normalized),
        properties=normalized,
        effect=effect,
        principal_id=str(principal_id) if principal_id else None,
        role_definition_name=properties.get("roleDefinitionName"),
        policy_assignment=policy_assignment or None,
        depends_on=tuple(sorted(depends_on)),
        unresolved_references=tuple(sorted(unresolved)),
    )


def _check_dependency_cycles(entities: list[ManagedEntity]) -> None:
    """Kahn's algorithm over dependsOn; leftover nodes form a cycle."""
    keys = {e.key for e in entities}
    in_degree = {e.key: 0 for e in entities}
    dependents: dict[str, list[str]] = {e.key: [] for e in entities}
    for entity in entities:
        for dependency in entity.depends_on:
            if dependency in keys:
                in_degree[entity.key] += 1
                dependents[dependency].append(entity.key)

    queue = deque(sorted(k for k, d in in_degree.items() if d == 0))
    visited = 0
    while queue:
        key = queue.popleft()
        visited += 1
        for dependent in dependents[key]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if visited != len(keys):
        cycle = sorted(k for k, d in in_degree.items() if d > 0)
        raise ManifestParseError(f"Dependency cycle between: {', '.join(cycle)}")


def _format_validation_error(source: str, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


# =============================================================================
# Operator overrides
# =============================================================================


class _OverridesDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    overrides: list[OperatorOverride] = Field(default_factory=list)


def load_overrides(path: Path) -> tuple[OperatorOverride, ...]:
    """Load operator overrides from YAML.

    ```yaml
    overrides:
      - entityKey: "PolicyExemption:alz:legacy-waiver"
        action: Detach
        reason: Waiver replaced by the new exemption set
        approvedBy: platform-team
    ```
    """
    if not path.exists():
        raise ManifestParseError(f"Overrides file not found: {path}")
    if path.stat().st_size > MAX_OVERRIDES_FILE_SIZE_BYTES:
        raise ManifestParseError(
            f"Overrides file exceeds maximum size of {MAX_OVERRIDES_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ManifestParseError(f"Failed to read overrides file {path}: {e}") from e

    try:
        document = _OverridesDocument.model_validate(raw_data)
    except ValidationError as e:
        raise ManifestParseError(_format_validation_error(str(path), e)) from e

    keys = [o.entity_key for o in document.overrides]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise ManifestParseError(f"Duplicate overrides for: {', '.join(duplicates)}")

    logger.info("Loaded operator overrides", extra={"source": str(path), "count": len(keys)})
    return tuple(document.overrides)
