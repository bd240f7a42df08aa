import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable
from uuid import uuid4

from .balance import BalanceAggregator
from .errors import (
    ConcurrentModificationError,
    ConsistencyViolationError,
    InsufficientCreditError,
    TemporarilyUnavailableError,
)
from .expiry import ExpirySweeper
from .lots import CreditLotStore, check_amount, utcnow
from .models import ConsumptionResult, EntryKind, LedgerEntry
from .storage import LedgerRepository
from .transactions import TransactionLedger

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class FifoConsumptionEngine:
    """Spends an owner's credit oldest lot first.

    Every ``consume`` call runs its lot decrements and ledger appends in one
    repository transaction that holds the owner's write lock. Each decrement
    is a compare-and-swap on the lot version read during allocation, so a
    concurrent writer aborts the whole walk; the call then starts over from
    the balance check, up to ``max_attempts`` times.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        lot_store: CreditLotStore,
        balance: BalanceAggregator,
        ledger: TransactionLedger,
        sweeper: ExpirySweeper,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.repository = repository
        self.lot_store = lot_store
        self.balance = balance
        self.ledger = ledger
        self.sweeper = sweeper
        self.max_attempts = max_attempts
        self.clock = clock

    def consume(self, owner_id: str, amount: Decimal, consuming_event_ref: str) -> ConsumptionResult:
        amount = check_amount(amount, "Amount to consume")

        for attempt in range(1, self.max_attempts + 1):
            available = self.balance.get_balance(owner_id)
            if available < amount:
                raise InsufficientCreditError(owner_id, available, amount)

            try:
                entries = self._allocate(owner_id, amount, consuming_event_ref)
            except ConcurrentModificationError as e:
                logger.warning(
                    "Conflict consuming %s for %s (ref %s), attempt %d/%d: %s",
                    amount, owner_id, consuming_event_ref, attempt, self.max_attempts, e,
                )
                continue
            except ConsistencyViolationError:
                logger.exception(
                    "Consistency violation consuming %s for %s (ref %s)",
                    amount, owner_id, consuming_event_ref,
                )
                raise

            logger.info(
                "Consumed %s for %s across %d lot(s) (ref %s)",
                amount, owner_id, len(entries), consuming_event_ref,
            )
            return ConsumptionResult(
                owner_id=owner_id,
                success=True,
                amount=amount,
                balance_after=entries[-1].balance_after,
                entries=entries,
                attempts=attempt,
            )

        logger.error(
            "Gave up consuming %s for %s (ref %s) after %d attempts",
            amount, owner_id, consuming_event_ref, self.max_attempts,
        )
        raise TemporarilyUnavailableError(owner_id, self.max_attempts)

    def _allocate(self, owner_id: str, amount: Decimal, consuming_event_ref: str) -> list[LedgerEntry]:
        now = self.clock()
        with self.repository.transaction():
            self.repository.lock_owner(owner_id)
            self.sweeper.sweep(owner_id, now)

            lots = self.lot_store.list_usable_lots(owner_id, now)
            balance = sum((lot.remaining_amount for lot in lots), Decimal("0"))
            # Re-checked under the transaction; another request may have spent first
            if balance < amount:
                raise InsufficientCreditError(owner_id, balance, amount)

            entries = []
            remaining = amount
            for lot in lots:
                if remaining == 0:
                    break
                take = min(lot.remaining_amount, remaining)
                self.lot_store.decrement_lot(lot.id, take, lot.version)
                entries.append(self.ledger.append(LedgerEntry(
                    id=uuid4(),
                    owner_id=owner_id,
                    kind=EntryKind.USED,
                    amount=take,
                    balance_before=balance,
                    balance_after=balance - take,
                    related_lot_id=lot.id,
                    related_event_ref=consuming_event_ref,
                    description=f"Credit used for {consuming_event_ref}",
                    created_at=now,
                )))
                balance -= take
                remaining -= take

            if remaining != 0:
                raise ConsistencyViolationError(
                    f"Allocation for {owner_id} left {remaining} of {amount} unassigned"
                )
            return entries
