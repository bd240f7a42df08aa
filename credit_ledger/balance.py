from datetime import datetime
from decimal import Decimal
from typing import Optional

from .lots import CreditLotStore
from .models import CreditsSummary, EntryKind
from .transactions import TransactionLedger


class BalanceAggregator:
    """Spendable balance, recomputed from the live lot set on every call."""

    def __init__(self, lot_store: CreditLotStore, ledger: TransactionLedger):
        self.lot_store = lot_store
        self.ledger = ledger

    def get_balance(self, owner_id: str, as_of: Optional[datetime] = None) -> Decimal:
        lots = self.lot_store.list_usable_lots(owner_id, as_of)
        return sum((lot.remaining_amount for lot in lots), Decimal("0"))

    def get_summary(self, owner_id: str, as_of: Optional[datetime] = None) -> CreditsSummary:
        usable = self.lot_store.list_usable_lots(owner_id, as_of)
        totals = {kind: Decimal("0") for kind in EntryKind}
        for entry in self.ledger.get_history(owner_id):
            totals[entry.kind] += entry.amount

        return CreditsSummary(
            owner_id=owner_id,
            available_balance=sum((lot.remaining_amount for lot in usable), Decimal("0")),
            total_earned=totals[EntryKind.EARNED] + totals[EntryKind.REFUNDED],
            total_used=totals[EntryKind.USED],
            total_expired=totals[EntryKind.EXPIRED],
            active_credits_count=len(usable),
        )
