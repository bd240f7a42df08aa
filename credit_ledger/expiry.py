import logging
from datetime import datetime
from uuid import uuid4

from .lots import CreditLotStore
from .models import EntryKind, LedgerEntry
from .transactions import TransactionLedger

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Writes an ``expired`` entry for each lot that lapsed with credit left on it.

    Lots themselves are not touched; expiry is a property of ``expires_at``.
    The entry only records the drop so the ledger chain keeps matching the
    live balance.
    """

    def __init__(self, lot_store: CreditLotStore, ledger: TransactionLedger):
        self.lot_store = lot_store
        self.ledger = ledger

    def sweep(self, owner_id: str, as_of: datetime) -> list[LedgerEntry]:
        entries = []
        for lot in self.lot_store.list_expired_lots(owner_id, as_of):
            if self.ledger.has_entry_for_lot(lot.id, EntryKind.EXPIRED):
                continue
            balance_before = self.ledger.current_balance(owner_id)
            entry = self.ledger.append(LedgerEntry(
                id=uuid4(),
                owner_id=owner_id,
                kind=EntryKind.EXPIRED,
                amount=lot.remaining_amount,
                balance_before=balance_before,
                balance_after=balance_before - lot.remaining_amount,
                related_lot_id=lot.id,
                related_event_ref=lot.source_event_ref,
                description=f"Credit expired on {lot.expires_at.date().isoformat()}",
                created_at=as_of,
            ))
            entries.append(entry)
            logger.info("Expired %s remaining on lot %s for %s", lot.remaining_amount, lot.id, owner_id)
        return entries
