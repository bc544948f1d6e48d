"""Database module for lendledger persistence."""

from lendledger.db.engine import get_session, init_db, transaction
from lendledger.db.models import LedgerEntry, LedgerEntryState, Resource

__all__ = [
    "get_session",
    "init_db",
    "transaction",
    "LedgerEntry",
    "LedgerEntryState",
    "Resource",
]
