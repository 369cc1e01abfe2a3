"""Payload normalization and hashing.

Observed payloads come back from the control plane decorated with
server-managed fields, defaults and case variations that the manifest never
states. Comparing raw payloads would flag nearly every entity as an
EffectCollision, so both sides are normalized before hashing.

NORMALIZATIONS:
1. System fields (id, etag, systemData, timestamps) are removed
2. Empty equivalence: [], {}, "" and null are treated as missing
3. Boolean strings ("true", "False") become booleans
4. Case-insensitive enum-like paths are lowercased
5. Unordered arrays are sorted by their canonical JSON form
6. Values equal to the control plane default are treated as missing

Before normalization, both sides go through ``canonical_properties``, which
renames manifest shorthands to the ARM property names the control plane
reports, so a declared entity and its observed twin share one shape.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import EntityKind, PolicyEffect, role_definition_guid

logger = logging.getLogger(__name__)

# Server-managed fields never declared in a manifest
SYSTEM_FIELDS: frozenset[str] = frozenset(
    {
        "id",
        "etag",
        "type",
        "systemData",
        "createdOn",
        "createdBy",
        "updatedOn",
        "updatedBy",
        "provisioningState",
        "resourceGuid",
        "tenantId",
        "managedBy",
        "scope",
    }
)

# Fields the control plane fills in for a kind when the manifest leaves them out
SERVER_FIELDS: dict[EntityKind, frozenset[str]] = {
    EntityKind.POLICY_DEFINITION: frozenset({"policyType", "versions"}),
    EntityKind.POLICY_SET_DEFINITION: frozenset({"policyType", "versions"}),
    EntityKind.POLICY_ASSIGNMENT: frozenset({"principalId"}),
    EntityKind.ROLE_ASSIGNMENT: frozenset({"principalType"}),
}

# Stamps written into ``metadata`` by the portal and the policy service
METADATA_STAMPS: frozenset[str] = frozenset(
    {"createdBy", "createdOn", "updatedBy", "updatedOn", "assignedBy", "parameterScopes"}
)

# Top-level values equal to the control plane default (after normalization)
DEFAULT_VALUES: dict[EntityKind, dict[str, Any]] = {
    EntityKind.POLICY_ASSIGNMENT: {"enforcementMode": "default"},
}

# Manifest shorthand -> ARM property name
PROPERTY_ALIASES: dict[EntityKind, dict[str, str]] = {
    EntityKind.POLICY_ASSIGNMENT: {"policyDefinition": "policyDefinitionId"},
    EntityKind.POLICY_EXEMPTION: {"policyAssignment": "policyAssignmentId"},
    EntityKind.ROLE_ASSIGNMENT: {"roleDefinitionName": "roleDefinitionId"},
}

PARAMETER_REFERENCE = re.compile(r"^\[parameters\('([^']+)'\)\]$", re.IGNORECASE)

# Ownership markers are stripped at any depth so detaching never changes the hash
OWNERSHIP_FIELDS: frozenset[str] = frozenset({"managedBy"})

HASH_ALGORITHM = "sha256"


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    BOOLEAN_NORMALIZE = "boolean_normalize"
    CASE_INSENSITIVE = "case_insensitive"
    ARRAY_UNORDERED = "array_unordered"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Entity kind to match, or "*" for all kinds
        path_pattern: Dotted property path pattern (supports * and **)
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, kind: EntityKind, path: str) -> bool:
        if self.kind != "*" and self.kind != kind.value:
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching where * stays within one path segment and ** spans segments."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.effect",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Policy effects are case-insensitive",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.value",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Parameter values may be string or bool",
    ),
    NormalizationRule(
        kind=EntityKind.POLICY_ASSIGNMENT.value,
        path_pattern="enforcementmode",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Enforcement mode casing varies between API versions",
    ),
    NormalizationRule(
        kind=EntityKind.POLICY_ASSIGNMENT.value,
        path_pattern="notscopes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Excluded scopes are a set",
    ),
    NormalizationRule(
        kind=EntityKind.ROLE_DEFINITION.value,
        path_pattern="**.actions",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Permission actions are a set",
    ),
    NormalizationRule(
        kind=EntityKind.ROLE_DEFINITION.value,
        path_pattern="**.notactions",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Permission actions are a set",
    ),
    NormalizationRule(
        kind=EntityKind.ROLE_DEFINITION.value,
        path_pattern="assignablescopes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Assignable scopes are a set",
    ),
    NormalizationRule(
        kind=EntityKind.POLICY_ASSIGNMENT.value,
        path_pattern="parameters.effect.value",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Policy effects are case-insensitive",
    ),
    NormalizationRule(
        kind=EntityKind.POLICY_ASSIGNMENT.value,
        path_pattern="policydefinitionid",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="ARM ids are case-insensitive",
    ),
    NormalizationRule(
        kind=EntityKind.POLICY_SET_DEFINITION.value,
        path_pattern="policydefinitions.policydefinitionid",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="ARM ids are case-insensitive",
    ),
    NormalizationRule(
        kind=EntityKind.POLICY_EXEMPTION.value,
        path_pattern="policyassignmentid",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="ARM ids are case-insensitive",
    ),
]


class PayloadNormalizer:
    """Reduces a payload to the form used for hashing and comparison."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize(self, kind: EntityKind, properties: dict[str, Any]) -> dict[str, Any]:
        server_fields = SERVER_FIELDS.get(kind, frozenset())
        result = self._normalize_node(
            kind, {k: v for k, v in properties.items() if k not in server_fields}, ""
        )
        if not isinstance(result, dict):
            return {}
        for key, default in DEFAULT_VALUES.get(kind, {}).items():
            if result.get(key) == default:
                del result[key]
        return result

    def _normalize_node(self, kind: EntityKind, value: Any, path: str) -> Any:
        if isinstance(value, dict):
            out: dict[str, Any] = {}
            for key in sorted(value):
                if key in OWNERSHIP_FIELDS or (not path and key in SYSTEM_FIELDS):
                    continue
                if path == "metadata" and key in METADATA_STAMPS:
                    continue
                child_path = f"{path}.{key}" if path else key
                child = self._normalize_node(kind, value[key], child_path)
                if _is_empty(child):
                    continue
                out[key] = child
            return self._apply_rules(kind, out, path)
        if isinstance(value, (list, tuple)):
            items = [self._normalize_node(kind, item, path) for item in value]
            items = [item for item in items if not _is_empty(item)]
            return self._apply_rules(kind, items, path)
        if isinstance(value, str):
            return self._apply_rules(kind, value.strip(), path)
        return self._apply_rules(kind, value, path)

    def _apply_rules(self, kind: EntityKind, value: Any, path: str) -> Any:
        if not path:
            return value
        for rule in self._rules:
            if rule.matches(kind, path):
                value = _apply_normalization(value, rule.normalization_type)
        return value


def _apply_normalization(value: Any, normalization_type: NormalizationType) -> Any:
    match normalization_type:
        case NormalizationType.BOOLEAN_NORMALIZE:
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
            return value
        case NormalizationType.CASE_INSENSITIVE:
            return value.lower() if isinstance(value, str) else value
        case NormalizationType.ARRAY_UNORDERED:
            if isinstance(value, list):
                return sorted(value, key=canonical_json)
            return value
        case _:
            return value


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def canonical_json(value: Any) -> str:
    """Deterministic JSON encoding used for hashing and stable artifacts."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


_default_normalizer = PayloadNormalizer()


def normalize_payload(kind: EntityKind, properties: dict[str, Any]) -> dict[str, Any]:
    return _default_normalizer.normalize(kind, properties)


def payload_hash(
    kind: EntityKind,
    properties: dict[str, Any],
    normalizer: PayloadNormalizer | None = None,
) -> str:
    """Hash of the normalized payload, prefixed with the algorithm name."""
    normalized = (normalizer or _default_normalizer).normalize(kind, properties)
    digest = hashlib.sha256(canonical_json(normalized).encode("utf-8")).hexdigest()
    return f"{HASH_ALGORITHM}:{digest}"


# =============================================================================
# Canonical shape
# =============================================================================


def canonical_properties(
    kind: EntityKind, properties: dict[str, Any], name: str = ""
) -> dict[str, Any]:
    """Rewrite declared or observed properties into the shared ARM shape.

    - Manifest shorthands become ARM property names (``policyDefinition`` ->
      ``policyDefinitionId`` and so on)
    - Role definitions are reduced to their GUID; built-in role names resolve
    - Assignment parameters take the ``{"value": ...}`` form
    - A definition's ``effect`` shorthand moves into ``policyRule.then``
    - Policy set members given as plain ids become reference objects
    - A display name equal to the entity name is dropped
    - Subscriptions carry no properties; only their placement is managed
    """
    if kind == EntityKind.SUBSCRIPTION:
        return {}

    result = copy.deepcopy(properties)
    for shorthand, arm_name in PROPERTY_ALIASES.get(kind, {}).items():
        if shorthand in result:
            value = result.pop(shorthand)
            result.setdefault(arm_name, value)

    if kind == EntityKind.ROLE_ASSIGNMENT and result.get("roleDefinitionId"):
        result["roleDefinitionId"] = role_definition_guid(result["roleDefinitionId"])

    elif kind == EntityKind.POLICY_ASSIGNMENT and isinstance(result.get("parameters"), dict):
        result["parameters"] = {
            key: value if isinstance(value, dict) and "value" in value else {"value": value}
            for key, value in result["parameters"].items()
        }

    elif kind == EntityKind.POLICY_DEFINITION and "effect" in result:
        effect = result.pop("effect")
        then = (result.get("policyRule") or {}).get("then")
        if isinstance(then, dict) and effect is not None:
            then.setdefault("effect", effect)

    elif kind == EntityKind.POLICY_SET_DEFINITION and isinstance(
        result.get("policyDefinitions"), list
    ):
        members = []
        for member in result["policyDefinitions"]:
            if isinstance(member, dict):
                # Generated by the service when not declared
                member = {k: v for k, v in member.items() if k != "policyDefinitionReferenceId"}
            else:
                member = {"policyDefinitionId": member}
            members.append(member)
        result["policyDefinitions"] = members

    if name and kind.is_scope and result.get("displayName") == name:
        del result["displayName"]
    return result


def policy_rule_effect(properties: dict[str, Any]) -> PolicyEffect | None:
    """Effect of a policy definition from ``policyRule.then.effect``.

    A parameterized effect (``[parameters('effect')]``) resolves to the
    parameter's ``defaultValue``.
    """
    rule = properties.get("policyRule")
    then = rule.get("then") if isinstance(rule, dict) else None
    effect = then.get("effect") if isinstance(then, dict) else None
    if isinstance(effect, str):
        match = PARAMETER_REFERENCE.match(effect.strip())
        if match:
            parameter = (properties.get("parameters") or {}).get(match.group(1)) or {}
            effect = parameter.get("defaultValue") if isinstance(parameter, dict) else None
    return PolicyEffect.parse(effect)
