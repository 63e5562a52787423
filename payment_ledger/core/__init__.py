"""Core ledger logic: money handling, locking, reconciliation and services."""
