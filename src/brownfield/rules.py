"""Pluggable rule table for conflict severity.

The classifier asks the rule table two questions:
- Does this policy effect escalate an EffectCollision to Red?
- Would deleting this orphaned entity be destructive?

Both have defaults that match the usual landing-zone expectations and can be
tuned from a YAML file or extended with extra rule callables.

EXAMPLE:
```yaml
escalatingEffects: [Deny, Modify]
destructiveRoles:
  - Owner
  - User Access Administrator
```
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .models import BUILT_IN_ROLE_DEFINITIONS, EntityKind, ManagedEntity, PolicyEffect

logger = logging.getLogger(__name__)

# Observed role assignments usually carry only the role definition id
OWNER_ROLE_ID = BUILT_IN_ROLE_DEFINITIONS["owner"]
USER_ACCESS_ADMINISTRATOR_ROLE_ID = BUILT_IN_ROLE_DEFINITIONS["user access administrator"]

DEFAULT_ESCALATING_EFFECTS: frozenset[PolicyEffect] = frozenset(
    {PolicyEffect.DENY, PolicyEffect.MODIFY}
)
DEFAULT_DESTRUCTIVE_ROLES: frozenset[str] = frozenset(
    {
        "owner",
        "user access administrator",
        OWNER_ROLE_ID,
        USER_ACCESS_ADMINISTRATOR_ROLE_ID,
    }
)

MAX_RULES_FILE_SIZE_BYTES = 256 * 1024


class RulesError(Exception):
    """Raised when the rule table configuration is invalid."""

    pass


@dataclass(frozen=True)
class RuleContext:
    """Facts about the whole snapshot that single-entity rules may need."""

    # Policy assignment name -> effect, from desired and observed state
    assignment_effects: Mapping[str, PolicyEffect] = field(default_factory=dict)


# Returns a rationale when the entity must not be removed automatically
DestructiveRule = Callable[[ManagedEntity, RuleContext], str | None]


def exemption_guards_deny(entity: ManagedEntity, context: RuleContext) -> str | None:
    """An exemption shields resources from its assignment; Deny makes removal visible."""
    if entity.kind != EntityKind.POLICY_EXEMPTION or not entity.policy_assignment:
        return None
    effect = context.assignment_effects.get(entity.policy_assignment)
    if effect == PolicyEffect.DENY:
        return (
            f"removing exemption would expose resources to Deny assignment "
            f"'{entity.policy_assignment}'"
        )
    return None


@dataclass(frozen=True)
class ConflictRuleTable:
    """Severity rules used by the classifier."""

    escalating_effects: frozenset[PolicyEffect] = DEFAULT_ESCALATING_EFFECTS
    destructive_roles: frozenset[str] = DEFAULT_DESTRUCTIVE_ROLES
    extra_rules: tuple[DestructiveRule, ...] = ()

    def escalates(self, effect: PolicyEffect | None) -> bool:
        return effect is not None and effect in self.escalating_effects

    def destructive_on_delete(self, entity: ManagedEntity, context: RuleContext) -> str | None:
        """Rationale if removing ``entity`` would be destructive, else None."""
        rationale = exemption_guards_deny(entity, context)
        if rationale:
            return rationale

        if entity.kind == EntityKind.ROLE_ASSIGNMENT and entity.role_definition_name:
            role = entity.role_definition_name.rsplit("/", 1)[-1].lower()
            if role in self.destructive_roles:
                return f"role assignment grants privileged role '{entity.role_definition_name}'"

        for rule in self.extra_rules:
            rationale = rule(entity, context)
            if rationale:
                return rationale
        return None

    def with_rules(self, *rules: DestructiveRule) -> ConflictRuleTable:
        return ConflictRuleTable(
            escalating_effects=self.escalating_effects,
            destructive_roles=self.destructive_roles,
            extra_rules=(*self.extra_rules, *rules),
        )

    @classmethod
    def from_file(cls, path: Path) -> ConflictRuleTable:
        """Load rule table overrides from YAML; missing keys keep defaults.

        A built-in role named in ``destructiveRoles`` also matches its role
        definition GUID.

        Raises:
            RulesError: If the file is missing, unreadable or fails validation.
        """
        if not path.exists():
            raise RulesError(f"Rules file not found: {path}")
        if path.stat().st_size > MAX_RULES_FILE_SIZE_BYTES:
            raise RulesError(f"Rules file exceeds {MAX_RULES_FILE_SIZE_BYTES} bytes: {path}")

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RulesError(f"Invalid YAML in rules file {path}: {e}") from e
        if not isinstance(data, dict):
            raise RulesError(f"Rules file must contain a mapping: {path}")

        try:
            document = _RulesDocument.model_validate(data)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise RulesError(f"Invalid rules file {path}: {details}") from e

        escalating = DEFAULT_ESCALATING_EFFECTS
        if document.escalating_effects is not None:
            parsed = {v: PolicyEffect.parse(v) for v in document.escalating_effects}
            unknown = [v for v, p in parsed.items() if p is None]
            if unknown:
                raise RulesError(f"Unknown policy effects in escalatingEffects: {unknown}")
            escalating = frozenset(p for p in parsed.values() if p is not None)

        roles = DEFAULT_DESTRUCTIVE_ROLES
        if document.destructive_roles is not None:
            names = {r.strip().lower() for r in document.destructive_roles}
            guids = {BUILT_IN_ROLE_DEFINITIONS[n] for n in names if n in BUILT_IN_ROLE_DEFINITIONS}
            roles = frozenset(names | guids)

        logger.info(
            "Loaded conflict rules",
            extra={
                "escalating_effects": sorted(e.value for e in escalating),
                "destructive_roles": len(roles),
            },
        )
        return cls(escalating_effects=escalating, destructive_roles=roles)


class _RulesDocument(BaseModel):
    """Schema of a rules file; a key that is present must hold a list."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    escalating_effects: list[str] | None = Field(None, alias="escalatingEffects")
    destructive_roles: list[str] | None = Field(None, alias="destructiveRoles")

    @model_validator(mode="after")
    def _reject_null_lists(self) -> _RulesDocument:
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                alias = type(self).model_fields[name].alias
                raise ValueError(f"{alias} must be a list, not null")
        return self
