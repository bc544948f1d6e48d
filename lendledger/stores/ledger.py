"""Storage of ledger entries and their terminal transition.

An entry moves ACTIVE -> RELEASED exactly once. The release write is
guarded by ``released_at IS NULL`` so a second writer matches zero rows.
"""

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.db.models import LedgerEntry, utc_now
from lendledger.errors import NotFoundError, ValidationError
from lendledger.validation import as_utc


class LedgerStore:
    """Ledger entry reads and writes inside the caller's transaction."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.session = session
        self.clock = clock

    async def create(self, holder_id: int, resource_id: int, due_at: datetime) -> LedgerEntry:
        """Insert an ACTIVE entry acquired now.

        Raises:
            ValidationError: ``due_at`` is before the acquisition time.
        """
        acquired_at = as_utc(self.clock())
        due_at = as_utc(due_at)
        if due_at < acquired_at:
            raise ValidationError(
                f"due_at {due_at.isoformat()} is before acquisition time "
                f"{acquired_at.isoformat()}",
                field="due_at",
            )
        entry = LedgerEntry(
            holder_id=holder_id,
            resource_id=resource_id,
            acquired_at=acquired_at,
            due_at=due_at,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get(self, entry_id: int) -> LedgerEntry:
        """Get an entry in any state."""
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Ledger entry", entry_id)
        return entry

    async def get_active(self, entry_id: int) -> LedgerEntry:
        """Get an entry that is still held.

        Released entries raise NotFoundError just like unknown ids.
        """
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.id == entry_id, LedgerEntry.released_at.is_(None))
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Active ledger entry", entry_id)
        return entry

    async def mark_released(self, entry_id: int, penalty_cents: int) -> bool:
        """Release an ACTIVE entry. Returns whether the row changed."""
        result = await self.session.execute(
            update(LedgerEntry)
            .where(LedgerEntry.id == entry_id, LedgerEntry.released_at.is_(None))
            .values(released_at=as_utc(self.clock()), penalty_cents=penalty_cents)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_active(self, resource_id: int) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(LedgerEntry)
            .where(
                LedgerEntry.resource_id == resource_id,
                LedgerEntry.released_at.is_(None),
            )
        )
        return count or 0

    async def count_all(self, resource_id: int) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(LedgerEntry)
            .where(LedgerEntry.resource_id == resource_id)
        )
        return count or 0

    async def list_active(
        self,
        holder_id: int | None = None,
        resource_id: int | None = None,
    ) -> list[LedgerEntry]:
        """Entries still held, oldest first, optionally filtered."""
        query = select(LedgerEntry).where(LedgerEntry.released_at.is_(None))
        if holder_id is not None:
            query = query.where(LedgerEntry.holder_id == holder_id)
        if resource_id is not None:
            query = query.where(LedgerEntry.resource_id == resource_id)
        result = await self.session.execute(
            query.order_by(LedgerEntry.acquired_at, LedgerEntry.id)
        )
        return list(result.scalars().all())
