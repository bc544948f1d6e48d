"""lendledger - transactional ledger for lendable resource units."""

__version__ = "0.1.0"
