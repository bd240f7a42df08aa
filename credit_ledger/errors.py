from decimal import Decimal
from typing import Optional


class CreditLedgerError(Exception):
    pass


class InvalidAmountError(CreditLedgerError):
    pass


class NotFoundError(CreditLedgerError):
    pass


class InsufficientCreditError(CreditLedgerError):
    def __init__(self, owner_id: str, available: Decimal, requested: Decimal):
        self.owner_id = owner_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient credit for {owner_id}: requested {requested}, available {available}"
        )


class ConcurrentModificationError(CreditLedgerError):
    def __init__(self, lot_id, expected_version: Optional[int] = None, actual_version: Optional[int] = None):
        self.lot_id = lot_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Lot {lot_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class TemporarilyUnavailableError(CreditLedgerError):
    def __init__(self, owner_id: str, attempts: int):
        self.owner_id = owner_id
        self.attempts = attempts
        super().__init__(
            f"Credits for {owner_id} are under contention, gave up after {attempts} attempts"
        )


class ConsistencyViolationError(CreditLedgerError):
    pass


class LedgerNotProvisionedError(CreditLedgerError):
    pass


class DuplicateIssuanceError(CreditLedgerError):
    def __init__(self, owner_id: str, source_event_ref: str, credit_type):
        self.owner_id = owner_id
        self.source_event_ref = source_event_ref
        self.credit_type = credit_type
        super().__init__(
            f"Credit for {source_event_ref} ({credit_type}) was already issued to {owner_id}"
        )


class WriteConflictError(ConcurrentModificationError):
    """Another writer changed the owner's ledger or held the storage lock first."""

    def __init__(self, owner_id: Optional[str], detail: str):
        self.owner_id = owner_id
        self.lot_id = None
        self.expected_version = None
        self.actual_version = None
        CreditLedgerError.__init__(self, f"Write conflict for {owner_id or 'ledger'}: {detail}")
