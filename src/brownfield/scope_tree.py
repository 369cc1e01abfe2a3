"""Management hierarchy operations.

The scope tree answers ancestry questions for the classifier (do two scopes
overlap?) and the planner (how deep is a node?), and validates that a set of
ScopeNodes really forms a tree.

RULES:
- Each node has at most one parent; parents outside the node set are allowed
  (a collection rooted below the tenant root has an external parent)
- A cycle in parent links is a hard error
- Two scopes overlap when one is an ancestor-or-self of the other, or when
  they are siblings (same parent)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from .errors import ClassificationInvariantViolation
from .models import ScopeNode, ScopeStatus

logger = logging.getLogger(__name__)


class ScopeTree:
    """Read-only view over a set of scope nodes keyed by id."""

    def __init__(self, nodes: Iterable[ScopeNode]) -> None:
        self._nodes: dict[str, ScopeNode] = {}
        for node in nodes:
            if node.id in self._nodes:
                raise ClassificationInvariantViolation(f"Duplicate scope node: {node.id}")
            self._nodes[node.id] = node
        self._check_cycles()

    @classmethod
    def merged(cls, primary: Iterable[ScopeNode], secondary: Iterable[ScopeNode]) -> ScopeTree:
        """Union of two node sets; nodes in ``primary`` win on id clashes."""
        nodes = {n.id: n for n in secondary}
        nodes.update({n.id: n for n in primary})
        return cls(nodes.values())

    def __contains__(self, scope_id: object) -> bool:
        return scope_id in self._nodes

    def __iter__(self) -> Iterator[ScopeNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, scope_id: str) -> ScopeNode | None:
        return self._nodes.get(scope_id)

    def parent_of(self, scope_id: str) -> str | None:
        node = self._nodes.get(scope_id)
        return node.parent_id if node else None

    def ancestors(self, scope_id: str) -> list[str]:
        """Ancestor ids from the nearest parent up, excluding ``scope_id``."""
        result: list[str] = []
        current = self.parent_of(scope_id)
        while current:
            result.append(current)
            current = self.parent_of(current)
        return result

    def path(self, scope_id: str) -> list[str]:
        """Ids from the topmost known ancestor down to ``scope_id`` inclusive."""
        return [*reversed(self.ancestors(scope_id)), scope_id]

    def depth(self, scope_id: str) -> int:
        return len(self.ancestors(scope_id))

    def is_ancestor_or_self(self, ancestor: str, scope_id: str) -> bool:
        return ancestor == scope_id or ancestor in self.ancestors(scope_id)

    def are_siblings(self, a: str, b: str) -> bool:
        parent_a = self.parent_of(a)
        return parent_a is not None and parent_a == self.parent_of(b)

    def overlaps(self, a: str, b: str) -> bool:
        return (
            self.is_ancestor_or_self(a, b)
            or self.is_ancestor_or_self(b, a)
            or self.are_siblings(a, b)
        )

    def children_of(self, scope_id: str) -> list[str]:
        return sorted(n.id for n in self._nodes.values() if n.parent_id == scope_id)

    def is_within_unreachable(self, scope_id: str) -> str | None:
        """Return the unreachable ancestor-or-self of ``scope_id``, if any."""
        for candidate in [scope_id, *self.ancestors(scope_id)]:
            node = self._nodes.get(candidate)
            if node is not None and node.status == ScopeStatus.UNREACHABLE:
                return candidate
        return None

    def validate_rooted_at(self, root_id: str) -> None:
        """Check every node is reachable from ``root_id`` by parent links.

        Raises:
            ClassificationInvariantViolation: If the root is missing or some
                node hangs off a parent outside the tree.
        """
        if root_id not in self._nodes:
            raise ClassificationInvariantViolation(f"Root scope '{root_id}' is not in the tree")
        detached = [
            node.id
            for node in self._nodes.values()
            if node.id != root_id and root_id not in self.ancestors(node.id)
        ]
        if detached:
            raise ClassificationInvariantViolation(
                f"Scopes not under root '{root_id}': {', '.join(sorted(detached))}"
            )

    def _check_cycles(self) -> None:
        """Walk every parent chain; revisiting a node on one walk is a cycle."""
        cleared: set[str] = set()
        for start in sorted(self._nodes):
            seen: list[str] = []
            current: str | None = start
            while current is not None and current in self._nodes and current not in cleared:
                if current in seen:
                    cycle = seen[seen.index(current) :] + [current]
                    logger.error("Scope cycle detected", extra={"cycle": cycle})
                    raise ClassificationInvariantViolation(
                        f"Cycle in scope tree: {' -> '.join(cycle)}"
                    )
                seen.append(current)
                current = self._nodes[current].parent_id
            cleared.update(seen)

    def with_children(self) -> list[ScopeNode]:
        """Nodes with ``child_ids`` recomputed from parent links, sorted by id."""
        return [
            node.model_copy(update={"child_ids": tuple(self.children_of(node.id))})
            for node in sorted(self._nodes.values(), key=lambda n: n.id)
        ]
