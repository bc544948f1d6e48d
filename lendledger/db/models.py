"""Database models for the lending ledger.

All models use SQLModel for Pydantic + SQLAlchemy integration.
Table-level CHECK constraints restate the counter invariants so a
faulty write is rejected by the database, not just by the application.
"""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


class LedgerEntryState(str, Enum):
    """Lifecycle of a ledger entry. RELEASED is terminal."""

    ACTIVE = "active"
    RELEASED = "released"


class Resource(SQLModel, table=True):
    """A countable lendable item.

    ``total_units`` is fixed at creation. ``available_units`` is only
    changed by the guarded updates in ResourceStore.
    """

    __tablename__ = "resources"
    __table_args__ = (
        CheckConstraint("total_units >= 0", name="ck_resources_total_nonneg"),
        CheckConstraint("available_units >= 0", name="ck_resources_available_nonneg"),
        CheckConstraint(
            "available_units <= total_units", name="ck_resources_available_ceiling"
        ),
        {"extend_existing": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str | None = Field(default=None)
    total_units: int = Field(default=0)
    available_units: int = Field(default=0)

    @property
    def held_units(self) -> int:
        return self.total_units - self.available_units


class LedgerEntry(SQLModel, table=True):
    """One loan of one unit of a resource to one holder.

    ``released_at`` is null while the unit is held. Penalties are stored
    in minor currency units (cents).
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("penalty_cents >= 0", name="ck_ledger_penalty_nonneg"),
        CheckConstraint("due_at >= acquired_at", name="ck_ledger_due_after_acquired"),
        CheckConstraint(
            "released_at IS NULL OR released_at >= acquired_at",
            name="ck_ledger_released_after_acquired",
        ),
        Index("ix_ledger_entries_resource_active", "resource_id", "released_at"),
        {"extend_existing": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    holder_id: int = Field(index=True)
    resource_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("resources.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        )
    )
    acquired_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    due_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    released_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    penalty_cents: int = Field(default=0)

    @property
    def state(self) -> LedgerEntryState:
        if self.released_at is None:
            return LedgerEntryState.ACTIVE
        return LedgerEntryState.RELEASED
