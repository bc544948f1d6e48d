"""Atomic acquire/release of resource units.

The coordinator is the only writer of ``available_units``,
``released_at`` and ``penalty_cents``. Each call runs as one
exclusive-write transaction; the whole transaction is retried when it
loses a storage-level race. The coordinator holds no locks of its own
and caches nothing between calls: isolation comes from the database,
and every counter change is a guarded UPDATE.
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lendledger.config import Settings, get_settings
from lendledger.db.engine import get_session, get_sessionmaker, transaction
from lendledger.db.models import utc_now
from lendledger.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    OperationTimeoutError,
    ResourceExhaustedError,
    ValidationError,
)
from lendledger.logging import get_logger, log_context
from lendledger.metrics import MetricsRegistry, record_operation
from lendledger.retry import AttemptCounter, RetryPolicy
from lendledger.stores import LedgerStore, ResourceStore
from lendledger.validation import as_utc, parse_due_at, require_id, require_penalty

logger = get_logger(__name__)

# A release whose released_at guard misses is tried this many times before
# the entry is reported as already released.
RELEASE_GUARD_ATTEMPTS = 2

T = TypeVar("T")


@dataclass
class OperationRecord:
    """What gets logged and counted for one acquire/release call."""

    operation: str
    resource_id: int | None = None
    entry_id: int | None = None
    outcome: str = "success"
    attempts: AttemptCounter = field(default_factory=AttemptCounter)
    duration: float = 0.0
    # event loop time at which the call's deadline expires
    deadline: float | None = None

    def lock_wait(self) -> float | None:
        """Longest an attempt may wait for the write lock, or None."""
        if self.deadline is None:
            return None
        return max(self.deadline - asyncio.get_running_loop().time(), 0.0)


@dataclass(frozen=True)
class AuditReport:
    """Invariant check for one resource."""

    resource_id: int
    total_units: int
    available_units: int
    active_entries: int

    @property
    def within_bounds(self) -> bool:
        return 0 <= self.available_units <= self.total_units

    @property
    def counts_match(self) -> bool:
        return self.active_entries == self.total_units - self.available_units

    @property
    def ok(self) -> bool:
        return self.within_bounds and self.counts_match


class LendingCoordinator:
    """Checks units out of and back into the ledger.

    Args:
        session_factory: Sessions for the backing database. Defaults to
            the global engine's factory.
        retry_policy: Backoff for transient contention.
        timeout: Default deadline in seconds for a whole call including
            retries. None means no deadline.
        clock: Source of acquisition and release timestamps.
        registry: Metrics registry; defaults to the global one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        registry: MetricsRegistry | None = None,
    ):
        self.session_factory = session_factory or get_sessionmaker()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.clock = clock
        self.registry = registry

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> "LendingCoordinator":
        settings = settings or get_settings()
        return cls(
            session_factory=session_factory,
            retry_policy=RetryPolicy.from_settings(settings),
            timeout=settings.operation_timeout,
        )

    async def acquire(
        self,
        holder_id: int,
        resource_id: int,
        due_at: datetime | date | str,
        *,
        timeout: float | None = None,
    ) -> int:
        """Check one unit of ``resource_id`` out to ``holder_id``.

        Returns:
            The id of the new ACTIVE ledger entry.

        Raises:
            ValidationError: bad ids, malformed due date, or due before now.
            NotFoundError: the resource does not exist.
            ResourceExhaustedError: no unit is available.
            ConflictError: contention persisted through every attempt.
            OperationTimeoutError: the deadline elapsed.
            PersistenceError: storage failed for a non-contention reason.
        """
        with self._observe("acquire", resource_id=resource_id) as record:
            holder_id = require_id(holder_id, "holder_id")
            resource_id = require_id(resource_id, "resource_id")
            due = parse_due_at(due_at)
            now = as_utc(self.clock())
            if due < now:
                raise ValidationError(
                    f"due_at {due.isoformat()} is before acquisition time {now.isoformat()}",
                    field="due_at",
                )

            async def attempt() -> int:
                async with transaction(
                    self.session_factory, busy_timeout=record.lock_wait()
                ) as session:
                    resources = ResourceStore(session)
                    resource = await resources.get(resource_id, lock=True)
                    if resource.available_units <= 0:
                        raise ResourceExhaustedError(resource_id)
                    if not await resources.decrement_available(resource_id):
                        raise ConflictError(
                            f"Lost the race for a unit of resource {resource_id}"
                        )
                    entry = await LedgerStore(session, self.clock).create(
                        holder_id, resource_id, due
                    )
                    return entry.id

            record.entry_id = await self._run(attempt, record, timeout)
            return record.entry_id

    async def release(
        self,
        entry_id: int,
        penalty_cents: int = 0,
        *,
        timeout: float | None = None,
    ) -> None:
        """Return the unit held by ledger entry ``entry_id``.

        Releasing an entry twice raises NotFoundError the second time and
        leaves the counter untouched. A release that loses the race for the
        entry is tried once more; losing again reports NotFoundError.

        Raises:
            ValidationError: bad id or negative penalty.
            NotFoundError: no ACTIVE entry with this id.
            ConflictError: contention persisted through every attempt.
            OperationTimeoutError: the deadline elapsed.
            PersistenceError: storage failed for a non-contention reason.
        """
        with self._observe("release", entry_id=entry_id) as record:
            entry_id = require_id(entry_id, "entry_id")
            penalty_cents = require_penalty(penalty_cents)
            guard_misses = AttemptCounter()

            async def attempt() -> None:
                async with transaction(
                    self.session_factory, busy_timeout=record.lock_wait()
                ) as session:
                    ledger = LedgerStore(session, self.clock)
                    entry = await ledger.get_active(entry_id)
                    record.resource_id = entry.resource_id
                    if not await ledger.mark_released(entry_id, penalty_cents):
                        guard_misses.count += 1
                        if guard_misses.count >= RELEASE_GUARD_ATTEMPTS:
                            raise NotFoundError("Active ledger entry", entry_id)
                        raise ConflictError(
                            f"Ledger entry {entry_id} was released concurrently"
                        )
                    await ResourceStore(session).increment_available(entry.resource_id)

            await self._run(attempt, record, timeout)

    async def audit(self, resource_id: int | None = None) -> list[AuditReport]:
        """Check the counter invariants for one or all resources."""
        async with get_session(self.session_factory) as session:
            resources = ResourceStore(session)
            ledger = LedgerStore(session)
            if resource_id is not None:
                rows = [await resources.get(require_id(resource_id, "resource_id"))]
            else:
                rows = await resources.list_all()
            reports = []
            for resource in rows:
                reports.append(
                    AuditReport(
                        resource_id=resource.id,
                        total_units=resource.total_units,
                        available_units=resource.available_units,
                        active_entries=await ledger.count_active(resource.id),
                    )
                )
            return reports

    async def _run(
        self,
        attempt: Callable[[], Awaitable[T]],
        record: OperationRecord,
        timeout: float | None,
    ) -> T:
        timeout = timeout if timeout is not None else self.timeout
        if timeout is None:
            return await self.retry_policy.run(attempt, record.attempts)

        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                record.deadline = deadline.when()
                return await self.retry_policy.run(attempt, record.attempts)
        except TimeoutError as exc:
            if not deadline.expired():
                raise
            raise OperationTimeoutError(
                record.operation, timeout, record.attempts.count
            ) from exc

    @contextmanager
    def _observe(self, operation: str, **ids: object) -> Iterator[OperationRecord]:
        record = OperationRecord(operation, **ids)
        start = time.perf_counter()
        with log_context(operation_id=uuid.uuid4().hex[:8]):
            try:
                yield record
            except LedgerError as exc:
                record.outcome = exc.code.lower()
                raise
            except asyncio.CancelledError:
                record.outcome = "cancelled"
                raise
            except Exception:
                record.outcome = "error"
                raise
            finally:
                record.duration = time.perf_counter() - start
                self._report(record)

    def _report(self, record: OperationRecord) -> None:
        fields = {
            "operation": record.operation,
            "resource_id": record.resource_id,
            "entry_id": record.entry_id,
            "outcome": record.outcome,
            "attempts_used": record.attempts.count,
            "duration_ms": round(record.duration * 1000, 3),
        }
        if record.outcome in ("database_error", "error"):
            logger.error("ledger_operation", **fields)
        elif record.outcome in ("conflict", "timeout", "cancelled"):
            logger.warning("ledger_operation", **fields)
        else:
            logger.info("ledger_operation", **fields)

        record_operation(
            record.operation,
            record.outcome,
            record.attempts.count,
            record.duration,
            resource_id=record.resource_id,
            registry=self.registry,
        )
