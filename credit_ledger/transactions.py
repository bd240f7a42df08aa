import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .errors import ConsistencyViolationError
from .models import EntryKind, LedgerEntry
from .storage import LedgerRepository

logger = logging.getLogger(__name__)


class TransactionLedger:
    """Append-only history of every balance-affecting event.

    Entries of one owner form a chain: each ``balance_before`` equals the
    previous entry's ``balance_after`` (zero for the first entry), and each
    ``balance_after`` is ``balance_before`` moved by the entry's amount in the
    direction of its kind.
    """

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def latest(self, owner_id: str) -> Optional[LedgerEntry]:
        return self.repository.latest_entry(owner_id)

    def current_balance(self, owner_id: str) -> Decimal:
        latest = self.latest(owner_id)
        return latest.balance_after if latest else Decimal("0")

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.amount <= 0:
            raise ConsistencyViolationError(f"Ledger entry {entry.id} has non-positive amount {entry.amount}")
        if entry.balance_after != entry.balance_before + entry.signed_amount:
            raise ConsistencyViolationError(
                f"Ledger entry {entry.id} moves {entry.balance_before} to {entry.balance_after} "
                f"for a {entry.kind.value} of {entry.amount}"
            )
        if entry.balance_after < 0:
            raise ConsistencyViolationError(f"Ledger entry {entry.id} would leave a negative balance")

        latest = self.latest(entry.owner_id)
        expected_before = latest.balance_after if latest else Decimal("0")
        if entry.balance_before != expected_before:
            raise ConsistencyViolationError(
                f"Ledger chain broken for {entry.owner_id}: entry {entry.id} starts at "
                f"{entry.balance_before}, previous entry ended at {expected_before}"
            )
        # Storage refuses a second entry at the same position
        position = latest.position + 1 if latest else 1
        return self.repository.append_entry(entry.model_copy(update={"position": position}))

    def get_history(self, owner_id: str) -> list[LedgerEntry]:
        return self.repository.list_entries(owner_id)

    def entry_for_lot(self, owner_id: str, lot_id: UUID, *kinds: EntryKind) -> Optional[LedgerEntry]:
        for entry in self.get_history(owner_id):
            if entry.related_lot_id == lot_id and (not kinds or entry.kind in kinds):
                return entry
        return None

    def has_entry_for_lot(self, lot_id: UUID, kind: EntryKind) -> bool:
        return self.repository.has_entry_for_lot(lot_id, kind)

    def verify_chain(self, owner_id: str) -> bool:
        previous_after = Decimal("0")
        for entry in self.get_history(owner_id):
            if entry.balance_before != previous_after:
                logger.error(
                    "Ledger chain broken for %s at entry %s: expected %s, found %s",
                    owner_id, entry.id, previous_after, entry.balance_before,
                )
                return False
            if entry.balance_after != entry.balance_before + entry.signed_amount:
                logger.error("Ledger entry %s for %s does not add up", entry.id, owner_id)
                return False
            previous_after = entry.balance_after
        return True
