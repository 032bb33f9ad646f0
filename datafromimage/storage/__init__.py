"""
Storage layer for accounts, the credit ledger and extraction history.

Uses SQLite (embedded, WAL mode).
"""

from datafromimage.storage.database import AccountDatabase

__all__ = ["AccountDatabase"]
