"""Tests for LendingCoordinator acquire/release."""

import sqlite3
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import locked_error
from lendledger.coordinator import LendingCoordinator
from lendledger.db.models import LedgerEntryState
from lendledger.errors import (
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    PersistenceError,
    ResourceExhaustedError,
    StorageErrorKind,
    ValidationError,
)
from lendledger.retry import RetryPolicy
from lendledger.stores import ResourceStore
from lendledger.validation import as_utc


def ops_counter(registry, operation, outcome):
    return registry.counter_value(
        "lendledger_operations_total", {"operation": operation, "outcome": outcome}
    )


def attempts_counter(registry, operation):
    return registry.counter_value("lendledger_operation_attempts_total", {"operation": operation})


def fail_first(monkeypatch, calls: int, error_factory):
    """Make ResourceStore.get raise for its first ``calls`` calls."""
    original = ResourceStore.get
    state = {"n": 0}

    async def flaky_get(self, resource_id, lock=False):
        state["n"] += 1
        if state["n"] <= calls:
            raise error_factory()
        return await original(self, resource_id, lock=lock)

    monkeypatch.setattr(ResourceStore, "get", flaky_get)
    return state


@pytest.mark.asyncio
class TestLendingScenarios:
    """End-to-end borrow/return scenarios."""

    async def test_acquire_creates_active_entry(
        self, coordinator, make_resource, read_resource, read_entry, clock
    ):
        """Scenario: one acquire takes one unit and opens one entry."""
        resource_id = await make_resource(3)
        entry_id = await coordinator.acquire(1, resource_id, clock.now + timedelta(days=7))

        assert (await read_resource(resource_id)).available_units == 2
        entry = await read_entry(entry_id)
        assert entry.state is LedgerEntryState.ACTIVE
        assert entry.holder_id == 1
        assert entry.resource_id == resource_id
        assert as_utc(entry.acquired_at) == clock.now

    async def test_fourth_acquire_exhausted(
        self, coordinator, make_resource, read_resource, registry, clock
    ):
        """Scenario: three units lend three times, the fourth call is refused."""
        resource_id = await make_resource(3)
        due = clock.now + timedelta(days=7)
        for holder in (1, 2, 3):
            await coordinator.acquire(holder, resource_id, due)
        assert (await read_resource(resource_id)).available_units == 0

        with pytest.raises(ResourceExhaustedError) as exc_info:
            await coordinator.acquire(4, resource_id, due)
        assert exc_info.value.resource_id == resource_id
        assert (await read_resource(resource_id)).available_units == 0

        assert ops_counter(registry, "acquire", "success") == 3
        assert ops_counter(registry, "acquire", "resource_exhausted") == 1
        assert registry.counter_value(
            "lendledger_exhausted_total", {"resource_id": str(resource_id)}
        ) == 1

    async def test_release_returns_unit(
        self, coordinator, make_resource, read_resource, read_entry, clock
    ):
        """Scenario: release frees the unit and closes the entry."""
        resource_id = await make_resource(3)
        due = clock.now + timedelta(days=7)
        first = await coordinator.acquire(1, resource_id, due)
        await coordinator.acquire(2, resource_id, due)
        await coordinator.acquire(3, resource_id, due)

        clock.now += timedelta(days=3)
        await coordinator.release(first, 0)

        assert (await read_resource(resource_id)).available_units == 1
        entry = await read_entry(first)
        assert entry.state is LedgerEntryState.RELEASED
        assert as_utc(entry.released_at) == clock.now

    async def test_double_release_not_found(
        self, coordinator, make_resource, read_resource, registry, clock
    ):
        """Scenario: the second release fails and does not increment again."""
        resource_id = await make_resource(3)
        due = clock.now + timedelta(days=7)
        first = await coordinator.acquire(1, resource_id, due)
        await coordinator.acquire(2, resource_id, due)
        await coordinator.acquire(3, resource_id, due)
        await coordinator.release(first, 0)

        with pytest.raises(NotFoundError):
            await coordinator.release(first, 0)
        assert (await read_resource(resource_id)).available_units == 1
        assert ops_counter(registry, "release", "success") == 1
        assert ops_counter(registry, "release", "not_found") == 1

    async def test_due_in_past_rolls_back(
        self, coordinator, make_resource, read_resource, count_active, clock
    ):
        """Scenario: a past due date is rejected with no row and no counter change."""
        resource_id = await make_resource(3)
        with pytest.raises(ValidationError):
            await coordinator.acquire(1, resource_id, clock.now - timedelta(days=1))
        assert (await read_resource(resource_id)).available_units == 3
        assert await count_active(resource_id) == 0

    async def test_transient_lock_then_success(
        self, coordinator, make_resource, read_resource, count_active, registry, monkeypatch, clock
    ):
        """Scenario: two lock errors, then success on the third attempt."""
        resource_id = await make_resource(3)
        state = fail_first(monkeypatch, 2, locked_error)

        entry_id = await coordinator.acquire(1, resource_id, clock.now + timedelta(days=7))

        assert entry_id is not None
        assert state["n"] == 3
        assert (await read_resource(resource_id)).available_units == 2
        assert await count_active(resource_id) == 1
        assert attempts_counter(registry, "acquire") == 3
        assert registry.counter_value(
            "lendledger_contended_operations_total", {"operation": "acquire"}
        ) == 1


@pytest.mark.asyncio
class TestAcquire:
    """Input handling and failure paths of acquire."""

    async def test_unknown_resource(self, coordinator, clock):
        with pytest.raises(NotFoundError):
            await coordinator.acquire(1, 999, clock.now + timedelta(days=1))

    async def test_zero_unit_resource(self, coordinator, make_resource, clock):
        resource_id = await make_resource(0)
        with pytest.raises(ResourceExhaustedError):
            await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

    @pytest.mark.parametrize(
        "holder_id, resource_id", [(0, 1), (-1, 1), (1, 0), (True, 1), ("1", 1)]
    )
    async def test_invalid_ids(self, coordinator, registry, holder_id, resource_id, clock):
        with pytest.raises(ValidationError):
            await coordinator.acquire(holder_id, resource_id, clock.now + timedelta(days=1))
        assert ops_counter(registry, "acquire", "validation_error") == 1
        assert attempts_counter(registry, "acquire") == 0

    async def test_past_due_date_on_unknown_resource(self, coordinator, registry, clock):
        """Input is rejected before the resource is looked up."""
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.acquire(1, 999, clock.now - timedelta(days=1))
        assert exc_info.value.field == "due_at"
        assert attempts_counter(registry, "acquire") == 0

    async def test_past_due_date_on_exhausted_resource(
        self, coordinator, make_resource, registry, clock
    ):
        resource_id = await make_resource(0)
        with pytest.raises(ValidationError):
            await coordinator.acquire(1, resource_id, clock.now - timedelta(days=1))
        assert ops_counter(registry, "acquire", "validation_error") == 1
        assert ops_counter(registry, "acquire", "resource_exhausted") == 0

    async def test_past_due_date_opens_no_transaction(
        self, coordinator, make_resource, monkeypatch, clock
    ):
        resource_id = await make_resource(1)
        calls = fail_first(monkeypatch, 0, locked_error)
        with pytest.raises(ValidationError):
            await coordinator.acquire(1, resource_id, clock.now - timedelta(seconds=1))
        assert calls["n"] == 0

    async def test_malformed_due_date(self, coordinator, make_resource, read_resource):
        resource_id = await make_resource(1)
        with pytest.raises(ValidationError):
            await coordinator.acquire(1, resource_id, "2026-02-30")
        assert (await read_resource(resource_id)).available_units == 1

    async def test_due_today_as_date(self, coordinator, make_resource, read_entry, clock):
        """A due date of today is accepted: the loan is due by end of day."""
        resource_id = await make_resource(1)
        entry_id = await coordinator.acquire(1, resource_id, clock.now.date())
        entry = await read_entry(entry_id)
        assert as_utc(entry.due_at).date() == clock.now.date()

    async def test_due_as_iso_string(self, coordinator, make_resource, read_entry):
        resource_id = await make_resource(1)
        entry_id = await coordinator.acquire(1, resource_id, "2026-11-02")
        entry = await read_entry(entry_id)
        assert as_utc(entry.due_at).date() == date(2026, 11, 2)

    async def test_retries_exhausted(
        self, coordinator, make_resource, read_resource, registry, monkeypatch, clock
    ):
        resource_id = await make_resource(2)
        state = fail_first(monkeypatch, 100, locked_error)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

        assert exc_info.value.attempts == 3
        assert exc_info.value.kind is StorageErrorKind.TRANSIENT
        assert state["n"] == 3
        assert ops_counter(registry, "acquire", "conflict") == 1
        monkeypatch.undo()
        assert (await read_resource(resource_id)).available_units == 2

    async def test_persistence_error_not_retried(
        self, coordinator, make_resource, registry, monkeypatch, clock
    ):
        resource_id = await make_resource(2)
        state = fail_first(
            monkeypatch,
            100,
            lambda: OperationalError("SELECT", None, sqlite3.OperationalError("disk I/O error")),
        )

        with pytest.raises(PersistenceError) as exc_info:
            await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

        assert exc_info.value.kind is StorageErrorKind.PERMANENT
        assert state["n"] == 1
        assert attempts_counter(registry, "acquire") == 1
        assert ops_counter(registry, "acquire", "database_error") == 1

    async def test_lost_race_on_decrement_is_retried(
        self, coordinator, make_resource, read_resource, monkeypatch, clock
    ):
        """A guarded decrement that matches no row counts as contention."""
        resource_id = await make_resource(2)
        original = ResourceStore.decrement_available
        state = {"n": 0}

        async def losing_once(self, rid):
            state["n"] += 1
            if state["n"] == 1:
                return False
            return await original(self, rid)

        monkeypatch.setattr(ResourceStore, "decrement_available", losing_once)
        await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

        assert state["n"] == 2
        assert (await read_resource(resource_id)).available_units == 1

    async def test_deadline_bounds_retry_loop(
        self, session_factory, registry, make_resource, read_resource, monkeypatch, clock
    ):
        resource_id = await make_resource(2)
        fail_first(monkeypatch, 100, locked_error)
        coordinator = LendingCoordinator(
            session_factory=session_factory,
            retry_policy=RetryPolicy(max_attempts=10, initial_delay=0.5),
            registry=registry,
            clock=clock,
        )

        with pytest.raises(OperationTimeoutError) as exc_info:
            await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1), timeout=0.1)

        assert exc_info.value.attempts == 1
        assert ops_counter(registry, "acquire", "timeout") == 1
        monkeypatch.undo()
        assert (await read_resource(resource_id)).available_units == 2

    async def test_default_timeout_from_coordinator(
        self, session_factory, registry, make_resource, monkeypatch, clock
    ):
        resource_id = await make_resource(1)
        fail_first(monkeypatch, 100, locked_error)
        coordinator = LendingCoordinator(
            session_factory=session_factory,
            retry_policy=RetryPolicy(max_attempts=10, initial_delay=0.5),
            timeout=0.1,
            registry=registry,
            clock=clock,
        )
        with pytest.raises(OperationTimeoutError):
            await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))


@pytest.mark.asyncio
class TestRelease:
    """Input handling and failure paths of release."""

    async def test_records_penalty(self, coordinator, make_resource, read_entry, clock):
        resource_id = await make_resource(1)
        entry_id = await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))
        clock.now += timedelta(days=5)
        await coordinator.release(entry_id, penalty_cents=400)
        entry = await read_entry(entry_id)
        assert entry.penalty_cents == 400
        assert as_utc(entry.released_at) >= as_utc(entry.acquired_at)

    async def test_unknown_entry(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.release(777)

    @pytest.mark.parametrize("entry_id, penalty", [(0, 0), (1, -5), (1, 1.5), (None, 0)])
    async def test_invalid_input(self, coordinator, registry, entry_id, penalty):
        with pytest.raises(ValidationError):
            await coordinator.release(entry_id, penalty)
        assert ops_counter(registry, "release", "validation_error") == 1

    async def test_concurrent_release_conflict_surfaces_not_found(
        self, coordinator, make_resource, read_resource, monkeypatch, clock
    ):
        """Losing the release race retries, then sees the entry gone."""
        from lendledger.stores import LedgerStore

        resource_id = await make_resource(1)
        entry_id = await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

        original_get_active = LedgerStore.get_active
        state = {"get_active": 0, "mark_released": 0}

        async def get_active(self, eid):
            state["get_active"] += 1
            if state["get_active"] > 1:
                # the other writer's release has committed by now
                raise NotFoundError("Active ledger entry", eid)
            return await original_get_active(self, eid)

        async def lost_race(self, eid, penalty):
            state["mark_released"] += 1
            return False

        monkeypatch.setattr(LedgerStore, "get_active", get_active)
        monkeypatch.setattr(LedgerStore, "mark_released", lost_race)

        with pytest.raises(NotFoundError):
            await coordinator.release(entry_id)
        assert state == {"get_active": 2, "mark_released": 1}
        assert (await read_resource(resource_id)).available_units == 0

    async def test_second_release_guard_miss_is_not_found(
        self, coordinator, make_resource, read_resource, registry, monkeypatch, clock
    ):
        """A guard miss is retried once, then reported as already released.

        Writes done inside the failed attempts are rolled back.
        """
        from lendledger.stores import LedgerStore

        resource_id = await make_resource(1)
        entry_id = await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

        original = LedgerStore.mark_released
        calls = {"n": 0}

        async def write_then_report_miss(self, eid, penalty):
            calls["n"] += 1
            await original(self, eid, penalty)
            return False

        monkeypatch.setattr(LedgerStore, "mark_released", write_then_report_miss)
        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.release(entry_id)
        assert exc_info.value.entity_id == entry_id
        assert calls["n"] == 2
        assert attempts_counter(registry, "release") == 2
        assert ops_counter(registry, "release", "not_found") == 1
        assert (await read_resource(resource_id)).available_units == 0

        monkeypatch.undo()
        await coordinator.release(entry_id)
        with pytest.raises(NotFoundError):
            await coordinator.release(entry_id)
        assert (await read_resource(resource_id)).available_units == 1

    async def test_transient_error_on_release_retried(
        self, coordinator, make_resource, read_resource, registry, monkeypatch, clock
    ):
        from lendledger.stores import LedgerStore

        resource_id = await make_resource(1)
        entry_id = await coordinator.acquire(1, resource_id, clock.now + timedelta(days=1))

        original = LedgerStore.get_active
        state = {"n": 0}

        async def flaky(self, eid):
            state["n"] += 1
            if state["n"] == 1:
                raise locked_error()
            return await original(self, eid)

        monkeypatch.setattr(LedgerStore, "get_active", flaky)
        await coordinator.release(entry_id)

        assert (await read_resource(resource_id)).available_units == 1
        assert attempts_counter(registry, "release") == 2


@pytest.mark.asyncio
class TestAudit:
    """Tests for the invariant audit."""

    async def test_audit_consistent(self, coordinator, make_resource, clock):
        first = await make_resource(2)
        second = await make_resource(1)
        await coordinator.acquire(1, first, clock.now + timedelta(days=1))

        reports = await coordinator.audit()
        assert [r.resource_id for r in reports] == [first, second]
        assert all(r.ok for r in reports)
        assert reports[0].active_entries == 1

    async def test_audit_detects_mismatch(self, coordinator, session_factory, make_resource):
        from lendledger.db.engine import transaction

        resource_id = await make_resource(2)
        async with transaction(session_factory) as session:
            await ResourceStore(session).decrement_available(resource_id)

        (report,) = await coordinator.audit(resource_id)
        assert report.within_bounds
        assert not report.counts_match
        assert not report.ok

    async def test_audit_unknown_resource(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.audit(404)
