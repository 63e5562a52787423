"""
Payment ledger reconciliation engine.

Keeps the internal ledger of transactions, invoices and payouts consistent
with the payment gateway:
1. Typed gateway client with a single minor-unit conversion point
2. Idempotent reconciliation of gateway events (webhook and synchronous paths)
3. Signature-verified, deduplicated webhook dispatch
4. Connect payout account lifecycle
"""

__version__ = "1.0.0"
