"""
Credit Ledger Engine

This module provides:
- Tiered cancellation credit policy
- Partially consumable credit lots with expiry
- Oldest-first (FIFO) consumption with optimistic concurrency and retry
- Balances recomputed from live lots on every read
- Append-only ledger with before/after balance snapshots for reconciliation
"""

from .errors import (
    CreditLedgerError,
    InvalidAmountError,
    InsufficientCreditError,
    ConcurrentModificationError,
    TemporarilyUnavailableError,
    ConsistencyViolationError,
    NotFoundError,
    LedgerNotProvisionedError,
    WriteConflictError,
)
from .models import (
    CreditType,
    EntryKind,
    CreditLot,
    LedgerEntry,
    CancellationQuote,
)
from .policy import CancellationPolicy, calculate_cancellation_credit
from .service import CreditLedgerService
from .storage import InMemoryStorage, LedgerRepository
from .sql_storage import SqlAlchemyStorage

__all__ = [
    "CreditLedgerError",
    "InvalidAmountError",
    "InsufficientCreditError",
    "ConcurrentModificationError",
    "WriteConflictError",
    "TemporarilyUnavailableError",
    "ConsistencyViolationError",
    "NotFoundError",
    "LedgerNotProvisionedError",
    "CreditType",
    "EntryKind",
    "CreditLot",
    "LedgerEntry",
    "CancellationQuote",
    "CancellationPolicy",
    "calculate_cancellation_credit",
    "CreditLedgerService",
    "InMemoryStorage",
    "LedgerRepository",
    "SqlAlchemyStorage",
]
