"""Stores bound to the caller's transaction."""

from lendledger.stores.ledger import LedgerStore
from lendledger.stores.resources import ResourceStore

__all__ = ["LedgerStore", "ResourceStore"]
