"""Database package."""
from .connection import close_db, get_db, get_engine, get_session_factory, init_db
from .models import (
    Base,
    ClientBillingProfile,
    ConnectAccount,
    Invoice,
    InvoiceLedgerEntry,
    Transaction,
)
from .repository import LedgerRepository

__all__ = [
    "Base",
    "ClientBillingProfile",
    "ConnectAccount",
    "Invoice",
    "InvoiceLedgerEntry",
    "LedgerRepository",
    "Transaction",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
