"""Inventory collector.

Reads the observed state below a scope root into an immutable
InventorySnapshot. The collector is strictly read-only.

WALK:
1. Fetch the root management group; denial here aborts the collection
2. Breadth-first over child management groups and subscriptions
3. At every scope, list each entity kind exhaustively (all pages)
4. A scope that denies enumeration is recorded as Unreachable and skipped;
   the classifier turns it into a reviewable Yellow conflict

Transient failures are retried with the tenant's RetryPolicy. Anything that
survives the retries, or any Unknown error, aborts with ControlPlaneUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .config import RetryPolicy, TenantConfig
from .control_plane import ControlPlane, ControlPlaneError, ErrorKind, list_all, with_timeout
from .errors import (
    ClassificationInvariantViolation,
    CollectionError,
    ControlPlaneUnavailable,
    PartialScopeAuthorizationDenied,
)
from .models import (
    EntityKind,
    InventorySnapshot,
    ManagedEntity,
    ScopeNode,
    ScopeStatus,
    SourceOfTruth,
    resource_id,
)
from .scope_tree import ScopeTree

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Kinds listed at every scope, besides the child scopes themselves
ENTITY_KINDS_AT_SCOPE: tuple[EntityKind, ...] = (
    EntityKind.POLICY_DEFINITION,
    EntityKind.POLICY_SET_DEFINITION,
    EntityKind.POLICY_ASSIGNMENT,
    EntityKind.POLICY_EXEMPTION,
    EntityKind.ROLE_DEFINITION,
    EntityKind.ROLE_ASSIGNMENT,
    EntityKind.NETWORK_RESOURCE,
)

SleepFunc = Callable[[float], Awaitable[None]]


class _ScopeDenied(Exception):
    """Internal signal: a sub-scope refused enumeration."""

    def __init__(self, scope_id: str, message: str) -> None:
        self.scope_id = scope_id
        super().__init__(message)


class InventoryCollector:
    """Collects an InventorySnapshot from a control plane."""

    def __init__(
        self,
        control_plane: ControlPlane,
        config: TenantConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._control_plane = control_plane
        self._config = config
        self._retry = retry_policy or config.retry_policy()
        self._sleep = sleep

    async def collect(self, scope_root: str | None = None) -> InventorySnapshot:
        """Collect everything below ``scope_root`` (default: configured root).

        Raises:
            PartialScopeAuthorizationDenied: The root itself cannot be read.
            ControlPlaneUnavailable: The control plane failed beyond retries.
            CollectionError: The root does not exist or paging ran away.
            ClassificationInvariantViolation: Duplicate keys or a scope cycle.
        """
        root_id = scope_root or self._config.root_scope_id
        started = time.monotonic()
        logger.info("Collecting inventory", extra={"root_scope": root_id})

        root_entity = await self._fetch_root(root_id)
        nodes: dict[str, ScopeNode] = {
            root_id: ScopeNode(
                id=root_id,
                parent_id=root_entity.scope or None,
                display_name=root_entity.display_name,
                kind=EntityKind.MANAGEMENT_GROUP,
            )
        }
        entities: list[ManagedEntity] = [root_entity]

        queue: deque[str] = deque([root_id])
        while queue:
            scope_id = queue.popleft()
            node = nodes[scope_id]
            try:
                scope_entities, children = await self._collect_scope(node)
            except _ScopeDenied as e:
                if scope_id == root_id:
                    raise PartialScopeAuthorizationDenied(
                        f"Enumeration of root scope '{root_id}' denied: {e}"
                    ) from e
                logger.warning(
                    "Scope unreachable, continuing",
                    extra={"scope": scope_id, "error": str(e)},
                )
                nodes[scope_id] = node.model_copy(update={"status": ScopeStatus.UNREACHABLE})
                continue

            entities.extend(scope_entities)
            for child in children:
                if child.id in nodes:
                    raise ClassificationInvariantViolation(
                        f"Scope '{child.id}' reached twice while walking '{root_id}'"
                    )
                nodes[child.id] = child
                queue.append(child.id)

        tree = ScopeTree(nodes.values())
        tree.validate_rooted_at(root_id)
        _check_unique_keys(entities)
        subscriptions = {n.id for n in nodes.values() if n.kind == EntityKind.SUBSCRIPTION}
        entities = _inherit_assignment_effects(entities, subscriptions)

        snapshot = InventorySnapshot(
            root_id=root_id,
            scopes=tuple(tree.with_children()),
            entities=tuple(sorted(entities, key=lambda e: e.key)),
        )
        logger.info(
            "Inventory collected",
            extra={
                "root_scope": root_id,
                "scopes": len(snapshot.scopes),
                "unreachable_scopes": len(snapshot.unreachable_scopes),
                "entities": len(snapshot.entities),
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )
        return snapshot

    async def _fetch_root(self, root_id: str) -> ManagedEntity:
        try:
            entity = await self._call(
                lambda: with_timeout(
                    self._control_plane.get("", EntityKind.MANAGEMENT_GROUP, root_id),
                    self._config.control_plane_timeout_seconds,
                ),
                f"get root '{root_id}'",
            )
        except ControlPlaneError as e:
            if e.kind == ErrorKind.AUTHORIZATION_DENIED:
                raise PartialScopeAuthorizationDenied(
                    f"Access to root scope '{root_id}' denied: {e}"
                ) from e
            if e.kind == ErrorKind.NOT_FOUND:
                raise CollectionError(f"Root scope '{root_id}' does not exist") from e
            raise ControlPlaneUnavailable(f"Failed to read root scope '{root_id}': {e}") from e
        return entity.with_source(SourceOfTruth.OBSERVED)

    async def _collect_scope(self, node: ScopeNode) -> tuple[list[ManagedEntity], list[ScopeNode]]:
        """Entities directly at ``node`` plus its child scope nodes."""
        collected: list[ManagedEntity] = []
        children: list[ScopeNode] = []

        child_kinds: tuple[EntityKind, ...] = ()
        if node.kind == EntityKind.MANAGEMENT_GROUP:
            child_kinds = (EntityKind.MANAGEMENT_GROUP, EntityKind.SUBSCRIPTION)

        for kind in (*child_kinds, *ENTITY_KINDS_AT_SCOPE):
            items = await self._list(node.id, kind)
            for item in items:
                entity = item.with_source(SourceOfTruth.OBSERVED)
                collected.append(entity)
                if kind in child_kinds:
                    children.append(
                        ScopeNode(
                            id=entity.name,
                            parent_id=node.id,
                            display_name=entity.display_name,
                            kind=kind,
                        )
                    )
        return collected, children

    async def _list(self, scope_id: str, kind: EntityKind) -> list[ManagedEntity]:
        try:
            return await self._call(
                lambda: list_all(
                    self._control_plane,
                    scope_id,
                    kind,
                    max_pages=self._config.max_list_pages,
                    timeout_seconds=self._config.control_plane_timeout_seconds,
                ),
                f"list {kind.value} at '{scope_id}'",
            )
        except ControlPlaneError as e:
            if e.kind in (ErrorKind.AUTHORIZATION_DENIED, ErrorKind.NOT_FOUND):
                raise _ScopeDenied(scope_id, str(e)) from e
            raise ControlPlaneUnavailable(
                f"Failed to list {kind.value} at '{scope_id}': {e}"
            ) from e

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run a read with the retry policy; only transient errors are retried."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except ControlPlaneError as e:
                if not e.is_transient:
                    raise
                if not self._retry.can_retry(attempt):
                    logger.error(
                        "Control plane unavailable after retries",
                        extra={"operation": description, "attempts": attempt},
                    )
                    raise ControlPlaneUnavailable(
                        f"{description} failed after {attempt} attempts: {e}"
                    ) from e
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Transient control plane error, retrying",
                    extra={
                        "operation": description,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "timed_out": e.timed_out,
                    },
                )
                await self._sleep(delay)


def _check_unique_keys(entities: list[ManagedEntity]) -> None:
    seen: set[str] = set()
    for entity in entities:
        if entity.key in seen:
            raise ClassificationInvariantViolation(f"Duplicate entity key in snapshot: {entity.key}")
        seen.add(entity.key)


def _inherit_assignment_effects(
    entities: list[ManagedEntity], subscriptions: set[str]
) -> list[ManagedEntity]:
    """Assignments without an effect parameter take their definition's effect.

    Mirrors the manifest loader, which resolves the same inheritance for
    declared assignments.
    """
    definitions = {
        resource_id(
            e.kind, e.name, e.scope, subscription_scope=e.scope in subscriptions
        ).lower(): e.effect
        for e in entities
        if e.kind == EntityKind.POLICY_DEFINITION and e.effect is not None
    }
    result = []
    for entity in entities:
        if entity.kind == EntityKind.POLICY_ASSIGNMENT and entity.effect is None:
            definition_id = str(entity.properties.get("policyDefinitionId", "")).lower()
            effect = definitions.get(definition_id)
            if effect is not None:
                entity = entity.model_copy(update={"effect": effect})
        result.append(entity)
    return result
