"""Stack executor.

Applies a ReconciliationPlan rank by rank against the control plane.

EXECUTION MODEL:
- Ranks run in order with a barrier between them
- Steps within a rank run concurrently, except that steps sharing an
  exclusive group hold that group's lock for their whole run
- Every record transition is flushed through the ExecutionStore before the
  next control-plane call
- A failed rank lets its running steps finish, then stops forward progress

RETRY:
Only transient errors (explicit Transient responses and timeouts) are
retried, up to ``max_attempts`` with incremental backoff. Each retry is the
Failed -> Pending transition. NotFound on Delete or Detach means the entity is
already gone and counts as success.

CANCELLATION:
``cancel()`` is the only path to Cancelled. In-flight calls are abandoned,
steps sleeping in backoff stop retrying, and steps not yet started are marked
Cancelled. Nothing is compensated or restarted.

COLD START:
Before a Create, Update or Adopt step, the target scope and its ancestors must
exist. Missing ones become ``prereq:<scope>`` sub-steps with their own records.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import RetryPolicy
from .control_plane import ControlPlane, ControlPlaneError, ErrorKind, with_timeout
from .errors import ExecutionFailed, ExecutionTransient
from .execution_store import ExecutionStore
from .models import (
    EntityKind,
    ExecutionRecord,
    ManagedEntity,
    PlanStep,
    ReconciliationPlan,
    ScopeNode,
    SourceOfTruth,
    StepOperation,
    StepStatus,
)
from .payload import payload_hash

logger = logging.getLogger(__name__)

T = TypeVar("T")

PREREQ_PREFIX = "prereq:"

Sleep = Callable[[float], Awaitable[Any]]


class RunStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass
class ExecutionResult:
    """Outcome of one apply run."""

    fingerprint: str
    status: RunStatus = RunStatus.SUCCEEDED
    records: dict[str, ExecutionRecord] = field(default_factory=dict)
    failures: list[ExecutionFailed] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in StepStatus}
        for record in self.records.values():
            counts[record.status.value] += 1
        return counts


class _OperatorCancelled(Exception):
    """Internal signal: the cancel event won the race against a call."""

    pass


class Executor:
    """Runs plan steps and records every transition."""

    def __init__(
        self,
        control_plane: ControlPlane,
        store: ExecutionStore,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 120,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._control_plane = control_plane
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._timeout = timeout_seconds
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self._group_locks: dict[str, asyncio.Lock] = {}
        self._scope_locks: dict[str, asyncio.Lock] = {}
        self._ready_scopes: set[str] = set()
        self._planned_scopes: set[str] = set()
        self._scopes: dict[str, ScopeNode] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Safe to call from a signal handler."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested")
        self._cancel_event.set()

    async def run(self, plan: ReconciliationPlan) -> ExecutionResult:
        """Apply ``plan``. Never raises for step failures; see the result."""
        result = ExecutionResult(fingerprint=plan.fingerprint)
        existing = self._store.open(plan.fingerprint)
        self._scopes = {s.id: s for s in plan.scopes}
        self._planned_scopes = {
            s.entity.name
            for s in plan.steps
            if s.entity.kind.is_scope and not s.operation.is_removal
        }
        self._ready_scopes = set()

        pending: list[PlanStep] = []
        for step in plan.steps:
            record = existing.get(step.step_id)
            if record is not None and record.status == StepStatus.SUCCEEDED:
                logger.info("Skipping succeeded step", extra={"step_id": step.step_id})
                continue
            self._store.put(record.restarted() if record else ExecutionRecord(step_id=step.step_id))
            pending.append(step)

        logger.info(
            "Starting apply",
            extra={
                "fingerprint": plan.fingerprint,
                "steps": len(plan.steps),
                "pending": len(pending),
                "ranks": len(plan.ranks()),
            },
        )

        for rank in plan.ranks():
            if self.cancelled:
                break
            steps = [s for s in pending if s.dependency_rank == rank]
            if not steps:
                continue
            outcomes = await asyncio.gather(*(self._run_step(s) for s in steps))
            failures = [f for f in outcomes if f is not None]
            if failures:
                result.failures.extend(failures)
                logger.error(
                    "Rank failed, stopping forward progress",
                    extra={"rank": rank, "failed_steps": [f.step_id for f in failures]},
                )
                break

        if self.cancelled:
            self._cancel_pending()
            result.status = RunStatus.CANCELLED
        elif result.failures:
            result.status = RunStatus.FAILED

        result.records = self._store.snapshot()
        result.end_time = datetime.now(UTC)
        logger.info(
            "Apply finished",
            extra={
                "fingerprint": plan.fingerprint,
                "status": result.status.value,
                "duration_seconds": result.duration_seconds,
                "step_counts": result.count_by_status(),
            },
        )
        return result

    async def _run_step(self, step: PlanStep) -> ExecutionFailed | None:
        lock = self._group_locks.setdefault(step.exclusive_group, asyncio.Lock())
        async with lock:
            if self.cancelled:
                return None
            if step.operation in (StepOperation.CREATE, StepOperation.UPDATE, StepOperation.ADOPT):
                failure = await self._ensure_scopes(step)
                if failure is not None:
                    return self._fail_before_start(step.step_id, failure)
            return await self._drive(
                step.step_id,
                self._operation_for(step),
                converged_on_not_found=step.operation.is_removal,
            )

    def _operation_for(self, step: PlanStep) -> Callable[[], Awaitable[Any]]:
        entity = step.entity
        match step.operation:
            case StepOperation.DELETE:
                return lambda: self._control_plane.delete(entity)
            case StepOperation.DETACH:
                return lambda: self._control_plane.detach_ownership(entity)
            case _:
                return lambda: self._control_plane.create_or_update(entity)

    async def _drive(
        self,
        step_id: str,
        call: Callable[[], Awaitable[Any]],
        *,
        converged_on_not_found: bool,
    ) -> ExecutionFailed | None:
        """Run one step to a terminal status, retrying transient failures."""
        owner = _task_owner()
        record = self._store.get(step_id) or ExecutionRecord(step_id=step_id)
        try:
            while True:
                if self.cancelled:
                    record.transition(
                        StepStatus.CANCELLED, error="cancelled before start", error_kind="Cancelled"
                    )
                    self._store.put(record, owner=owner)
                    return None

                record.transition(StepStatus.IN_PROGRESS)
                self._store.put(record, owner=owner)
                logger.info(
                    "Step started", extra={"step_id": step_id, "attempt": record.attempt_count}
                )

                try:
                    await self._attempt(step_id, call, converged_on_not_found)
                except _OperatorCancelled:
                    record.transition(
                        StepStatus.CANCELLED, error="cancelled by operator", error_kind="Cancelled"
                    )
                    self._store.put(record, owner=owner)
                    logger.warning("Step cancelled", extra={"step_id": step_id})
                    return None
                except ExecutionTransient as e:
                    cause = e.__cause__
                    timed_out = isinstance(cause, ControlPlaneError) and cause.timed_out
                    record.transition(
                        StepStatus.FAILED,
                        error=str(e),
                        error_kind="Timeout" if timed_out else ErrorKind.TRANSIENT.value,
                    )
                    self._store.put(record, owner=owner)
                    if not self._retry.can_retry(record.attempt_count):
                        logger.error(
                            "Step exhausted retries",
                            extra={"step_id": step_id, "attempts": record.attempt_count},
                        )
                        return ExecutionFailed(
                            step_id, f"{e} (after {record.attempt_count} attempts)"
                        )
                    delay = self._retry.delay_for(record.attempt_count)
                    logger.warning(
                        "Transient failure, retrying",
                        extra={
                            "step_id": step_id,
                            "attempt": record.attempt_count,
                            "max_attempts": self._retry.max_attempts,
                            "wait_seconds": delay,
                            "error": str(e),
                        },
                    )
                    await self._backoff(step_id, delay)
                    record.transition(StepStatus.PENDING)
                    self._store.put(record, owner=owner)
                    continue
                except ExecutionFailed as e:
                    cause = e.__cause__
                    kind = (
                        cause.kind.value
                        if isinstance(cause, ControlPlaneError)
                        else ErrorKind.UNKNOWN.value
                    )
                    record.transition(StepStatus.FAILED, error=str(e), error_kind=kind)
                    self._store.put(record, owner=owner)
                    logger.error(
                        "Step failed", extra={"step_id": step_id, "error_kind": kind}
                    )
                    return e

                record.transition(StepStatus.SUCCEEDED)
                self._store.put(record, owner=owner)
                logger.info(
                    "Step succeeded", extra={"step_id": step_id, "attempts": record.attempt_count}
                )
                return None
        finally:
            self._store.release(step_id)

    async def _attempt(
        self,
        step_id: str,
        call: Callable[[], Awaitable[Any]],
        converged_on_not_found: bool,
    ) -> None:
        """One control-plane call, classified into the execution taxonomy.

        Raises:
            ExecutionTransient: Retryable failure, including a timeout.
            ExecutionFailed: Any other control-plane error, or an unexpected
                exception from the control plane (error kind Unknown).
            _OperatorCancelled: If cancel() fired while the call was in flight.
        """
        try:
            await self._race(with_timeout(call(), self._timeout))
        except ControlPlaneError as e:
            if e.kind == ErrorKind.NOT_FOUND and converged_on_not_found:
                logger.info("Entity already absent", extra={"step_id": step_id})
                return
            if e.is_transient:
                raise ExecutionTransient(str(e)) from e
            raise ExecutionFailed(step_id, f"{e.kind.value}: {e}") from e
        except _OperatorCancelled:
            raise
        except Exception as e:
            logger.exception("Unexpected control plane failure", extra={"step_id": step_id})
            raise ExecutionFailed(step_id, f"{ErrorKind.UNKNOWN.value}: {e!r}") from e

    async def _race(self, call: Awaitable[T]) -> T:
        """Await ``call`` unless cancel() fires first."""
        task = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise _OperatorCancelled()
        return task.result()

    async def _backoff(self, step_id: str, delay: float) -> None:
        try:
            await self._race(self._sleep(delay))
        except _OperatorCancelled:
            logger.warning("Cancelled during backoff", extra={"step_id": step_id})

    def _fail_before_start(self, step_id: str, prereq: ExecutionFailed) -> ExecutionFailed | None:
        """Mark a step Failed because a prerequisite scope could not be ensured."""
        if self.cancelled:
            return None
        record = self._store.get(step_id) or ExecutionRecord(step_id=step_id)
        record.transition(StepStatus.IN_PROGRESS)
        self._store.put(record, owner=_task_owner())
        record.transition(
            StepStatus.FAILED,
            error=f"prerequisite failed: {prereq}",
            error_kind="PrerequisiteFailed",
        )
        self._store.put(record, owner=_task_owner())
        self._store.release(step_id)
        return ExecutionFailed(step_id, f"prerequisite {prereq.step_id} failed")

    # -------------------------------------------------------------------------
    # Cold-start scopes
    # -------------------------------------------------------------------------

    def _scope_chain(self, step: PlanStep) -> list[str]:
        """Target scope of ``step`` and its ancestors, root first."""
        chain: list[str] = []
        current: str | None = step.entity.scope or None
        seen: set[str] = set()
        while current and current not in seen:
            seen.add(current)
            chain.append(current)
            node = self._scopes.get(current)
            current = node.parent_id if node else None
        chain.reverse()
        return chain

    async def _ensure_scopes(self, step: PlanStep) -> ExecutionFailed | None:
        for scope_id in self._scope_chain(step):
            if scope_id in self._planned_scopes:
                continue
            failure = await self._ensure_scope(scope_id)
            if failure is not None or self.cancelled:
                return failure
        return None

    async def _ensure_scope(self, scope_id: str) -> ExecutionFailed | None:
        if scope_id in self._ready_scopes:
            return None
        lock = self._scope_locks.setdefault(scope_id, asyncio.Lock())
        async with lock:
            if scope_id in self._ready_scopes:
                return None
            node = self._scopes.get(scope_id)
            kind = node.kind if node else EntityKind.MANAGEMENT_GROUP

            try:
                await self._race(
                    with_timeout(self._control_plane.get("", kind, scope_id), self._timeout)
                )
                self._ready_scopes.add(scope_id)
                return None
            except _OperatorCancelled:
                return None
            except ControlPlaneError as e:
                if e.kind != ErrorKind.NOT_FOUND:
                    logger.warning(
                        "Scope lookup failed, ensuring it anyway",
                        extra={"scope": scope_id, "error_kind": e.kind.value},
                    )
            except Exception as e:
                logger.warning(
                    "Scope lookup failed, ensuring it anyway",
                    extra={
                        "scope": scope_id,
                        "error_kind": ErrorKind.UNKNOWN.value,
                        "error": repr(e),
                    },
                )

            step_id = f"{PREREQ_PREFIX}{scope_id}"
            record = self._store.get(step_id)
            if record is None:
                record = ExecutionRecord(step_id=step_id)
            elif record.status != StepStatus.PENDING:
                record = record.restarted()
            self._store.put(record)
            logger.info("Creating missing scope", extra={"scope": scope_id, "step_id": step_id})

            entity = _scope_entity(node, kind, scope_id)
            failure = await self._drive(
                step_id,
                lambda: self._control_plane.create_or_update(entity),
                converged_on_not_found=False,
            )
            if failure is None and not self.cancelled:
                self._ready_scopes.add(scope_id)
            return failure

    def _cancel_pending(self) -> None:
        for step_id, record in self._store.snapshot().items():
            if record.status == StepStatus.PENDING:
                record.transition(
                    StepStatus.CANCELLED, error="cancelled before start", error_kind="Cancelled"
                )
                self._store.put(record)


def _scope_entity(node: ScopeNode | None, kind: EntityKind, scope_id: str) -> ManagedEntity:
    properties: dict[str, Any] = {}
    if node is not None and node.display_name:
        properties["displayName"] = node.display_name
    return ManagedEntity(
        kind=kind,
        name=scope_id,
        scope=(node.parent_id or "") if node else "",
        source_of_truth=SourceOfTruth.DECLARED,
        payload_hash=payload_hash(kind, properties),
        properties=properties,
    )


def _task_owner() -> str:
    task = asyncio.current_task()
    return task.get_name() if task is not None else "main"
