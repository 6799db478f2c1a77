"""LedgerQ - retrying ledger writer for exchange trade and funding events."""

__version__ = "1.0.0"
