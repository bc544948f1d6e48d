"""Storage and bounded mutation of Resource rows.

Counter changes are single UPDATE statements whose WHERE clause carries
the guard. Two writers racing for the last unit cannot both succeed:
the database serializes them on the row and re-evaluates the predicate
for the second one.
"""

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.db.models import Resource
from lendledger.errors import NotFoundError, ResourceInUseError
from lendledger.stores.ledger import LedgerStore
from lendledger.validation import require_units


class ResourceStore:
    """Resource reads and writes inside the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, resource_id: int, lock: bool = False) -> Resource:
        """Read the current row.

        With ``lock=True`` the row is selected FOR UPDATE on backends that
        support it. SQLite ignores the clause; its transactions already
        hold the database write lock.
        """
        query = select(Resource).where(Resource.id == resource_id)
        if lock:
            query = query.with_for_update()
        result = await self.session.execute(
            query.execution_options(populate_existing=True)
        )
        resource = result.scalar_one_or_none()
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        return resource

    async def decrement_available(self, resource_id: int) -> bool:
        """Take one unit if any is available. Returns whether the row changed."""
        result = await self.session.execute(
            update(Resource)
            .where(Resource.id == resource_id, Resource.available_units > 0)
            .values(available_units=Resource.available_units - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment_available(self, resource_id: int) -> bool:
        """Return one unit, clamped at ``total_units``.

        Returns whether the row matched. A clamped increment on a full
        resource still matches.
        """
        bumped = Resource.available_units + 1
        result = await self.session.execute(
            update(Resource)
            .where(Resource.id == resource_id)
            .values(
                available_units=case(
                    (bumped > Resource.total_units, Resource.total_units),
                    else_=bumped,
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def create(self, total_units: int, name: str | None = None) -> Resource:
        """Insert a resource with every unit available."""
        total_units = require_units(total_units)
        resource = Resource(name=name, total_units=total_units, available_units=total_units)
        self.session.add(resource)
        await self.session.flush()
        return resource

    async def delete(self, resource_id: int) -> None:
        """Delete a resource no ledger entry references."""
        await self.get(resource_id)
        references = await LedgerStore(self.session).count_all(resource_id)
        if references:
            raise ResourceInUseError(resource_id, references)
        await self.session.execute(
            delete(Resource)
            .where(Resource.id == resource_id)
            .execution_options(synchronize_session=False)
        )

    async def list_all(self) -> list[Resource]:
        result = await self.session.execute(select(Resource).order_by(Resource.id))
        return list(result.scalars().all())
