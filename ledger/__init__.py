"""
Balance Ledger for the Channel Rewards platform

This module provides:
- Account balances mutated only through paired credit/debit operations
- Append-only Transaction records for every mutation
- Idempotency keys for externally triggered credits and deductions
- Deposit / withdrawal requests with admin approval
- Daily check-in bonus and configurable economic settings
"""

from .models import (
    Account,
    AppSettings,
    Transaction,
    TransactionMeta,
    TransactionStatus,
    TransactionType,
    UserBalance,
)
from .service import LedgerService
from .store import InMemoryStorage

__all__ = [
    "Account",
    "AppSettings",
    "Transaction",
    "TransactionMeta",
    "TransactionStatus",
    "TransactionType",
    "UserBalance",
    "LedgerService",
    "InMemoryStorage",
]
