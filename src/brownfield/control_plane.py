"""Abstract Resource Control Plane.

The reconciliation core never talks to a cloud SDK directly. It depends on
this interface only; ``azure_control_plane`` provides the real adapter and the
test suite provides an in-memory fake.

CONVENTIONS:
- ``list_page`` returns one page plus a continuation token (None when done)
- ``get`` for ManagementGroup and Subscription ignores an empty scope, since
  their names are tenant-global
- All writes are idempotent: creating an existing entity converges it,
  deleting or detaching a missing entity raises NotFound
- Every error is a ControlPlaneError carrying one ErrorKind
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from .errors import CollectionError
from .models import EntityKind, ManagedEntity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error taxonomy every adapter maps its failures onto."""

    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    AUTHORIZATION_DENIED = "AuthorizationDenied"
    TRANSIENT = "Transient"
    UNKNOWN = "Unknown"


class ControlPlaneError(Exception):
    """A classified control-plane failure."""

    def __init__(self, kind: ErrorKind, message: str, *, timed_out: bool = False) -> None:
        self.kind = kind
        self.timed_out = timed_out
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


@dataclass
class Page:
    """One page of a list call."""

    items: list[ManagedEntity] = field(default_factory=list)
    continuation_token: str | None = None


class ControlPlane(ABC):
    """Operations the engine needs from a resource control plane."""

    @abstractmethod
    async def get(self, scope: str, kind: EntityKind, name: str) -> ManagedEntity:
        """Fetch one entity. Raises ControlPlaneError(NotFound) when absent."""

    @abstractmethod
    async def list_page(
        self,
        scope: str,
        kind: EntityKind,
        continuation_token: str | None = None,
    ) -> Page:
        """List entities of ``kind`` directly at ``scope``.

        For ManagementGroup and Subscription this lists the child nodes of
        ``scope``.
        """

    @abstractmethod
    async def create_or_update(self, entity: ManagedEntity) -> ManagedEntity:
        """Create or converge an entity and mark it as managed."""

    @abstractmethod
    async def delete(self, entity: ManagedEntity) -> None:
        """Delete an entity."""

    @abstractmethod
    async def detach_ownership(self, entity: ManagedEntity) -> None:
        """Stop managing an entity without deleting it."""


async def with_timeout(call: Awaitable[T], timeout_seconds: float) -> T:
    """Await a control-plane call, turning expiry into a transient error.

    The timeout is reported with ``timed_out=True`` so it stays
    distinguishable from an explicit transient response.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except TimeoutError as e:
        raise ControlPlaneError(
            ErrorKind.TRANSIENT,
            f"Control plane call timed out after {timeout_seconds}s",
            timed_out=True,
        ) from e


async def list_all(
    control_plane: ControlPlane,
    scope: str,
    kind: EntityKind,
    *,
    max_pages: int,
    timeout_seconds: float,
) -> list[ManagedEntity]:
    """Follow continuation tokens until the listing is exhausted.

    Raises:
        CollectionError: If more than ``max_pages`` pages are returned, or a
            continuation token repeats. Results are never truncated.
    """
    items: list[ManagedEntity] = []
    token: str | None = None
    seen_tokens: set[str] = set()
    pages = 0

    while True:
        page = await with_timeout(
            control_plane.list_page(scope, kind, token), timeout_seconds
        )
        pages += 1
        items.extend(page.items)
        token = page.continuation_token
        if not token:
            return items
        if token in seen_tokens:
            raise CollectionError(
                f"Continuation token repeated while listing {kind.value} at '{scope}'"
            )
        seen_tokens.add(token)
        if pages >= max_pages:
            logger.error(
                "Pagination guard exceeded",
                extra={"scope": scope, "kind": kind.value, "max_pages": max_pages},
            )
            raise CollectionError(
                f"Listing {kind.value} at '{scope}' exceeded {max_pages} pages"
            )
