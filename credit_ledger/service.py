import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from .balance import BalanceAggregator
from .consumption import DEFAULT_MAX_ATTEMPTS, FifoConsumptionEngine
from .errors import (
    ConcurrentModificationError,
    ConsistencyViolationError,
    DuplicateIssuanceError,
    TemporarilyUnavailableError,
)
from .expiry import ExpirySweeper
from .lots import DEFAULT_CANCELLATION_TTL, CreditLotStore, utcnow
from .models import (
    BulkExpiryResult,
    CancellationOutcome,
    CancellationQuote,
    ConsumptionResult,
    CreditBalance,
    CreditLot,
    CreditsSummary,
    CreditType,
    EntryKind,
    ExpiryResult,
    IssuanceResult,
    LedgerEntry,
    LedgerHistoryResponse,
    ReconciliationReport,
    as_utc,
)
from .policy import CancellationPolicy
from .settings import Settings
from .sql_storage import SqlAlchemyStorage
from .storage import InMemoryStorage, LedgerRepository
from .transactions import TransactionLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CreditLedgerService:
    def __init__(
        self,
        storage: Optional[LedgerRepository] = None,
        policy: Optional[CancellationPolicy] = None,
        cancellation_ttl: Optional[timedelta] = DEFAULT_CANCELLATION_TTL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage or InMemoryStorage()
        self.policy = policy or CancellationPolicy()
        self.clock = clock

        self.lots = CreditLotStore(self.storage, cancellation_ttl=cancellation_ttl, clock=clock)
        self.ledger = TransactionLedger(self.storage)
        self.balance = BalanceAggregator(self.lots, self.ledger)
        self.sweeper = ExpirySweeper(self.lots, self.ledger)
        self.engine = FifoConsumptionEngine(
            self.storage, self.lots, self.balance, self.ledger, self.sweeper,
            max_attempts=max_attempts, clock=clock,
        )
        self.max_attempts = self.engine.max_attempts

    def quote_cancellation(
        self,
        paid_amount: Decimal,
        scheduled_event_time: datetime,
        cancellation_time: Optional[datetime] = None,
    ) -> CancellationQuote:
        return self.policy.quote(paid_amount, scheduled_event_time, cancellation_time or self.clock())

    def on_cancellation(
        self,
        owner_id: str,
        source_event_ref: str,
        paid_amount: Decimal,
        scheduled_event_time: datetime,
        description: Optional[str] = None,
        cancellation_time: Optional[datetime] = None,
    ) -> CancellationOutcome:
        quote = self.quote_cancellation(paid_amount, scheduled_event_time, cancellation_time)
        if not quote.eligible:
            logger.info("Cancellation %s for %s earns no credit", source_event_ref, owner_id)
            return CancellationOutcome(quote=quote, message="Cancellation is not eligible for credit")

        result = self.issue_credit(
            owner_id,
            quote.credit_amount,
            CreditType.CANCELLATION,
            description=description or f"Cancellation credit for {source_event_ref} ({quote.percentage}%)",
            source_event_ref=source_event_ref,
        )
        return CancellationOutcome(
            quote=quote,
            lot=result.lot,
            ledger_entry=result.ledger_entry,
            message=result.message,
        )

    def issue_credit(
        self,
        owner_id: str,
        amount: Decimal,
        credit_type: CreditType,
        description: Optional[str] = None,
        source_event_ref: Optional[str] = None,
        ttl: Optional[timedelta] = None,
        created_by: Optional[str] = None,
    ) -> IssuanceResult:
        if source_event_ref is not None:
            existing = self.lots.find_issued(owner_id, source_event_ref, credit_type)
            if existing:
                return self._idempotent_result(existing)

        try:
            return self._retrying(
                owner_id,
                "issuing credit",
                lambda: self._issue(owner_id, amount, credit_type, description, source_event_ref, ttl, created_by),
            )
        except DuplicateIssuanceError:
            # Lost an insert race against an identical request
            return self._idempotent_result(self.lots.find_issued(owner_id, source_event_ref, credit_type))

    def _retrying(self, owner_id: str, operation: str, action: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return action()
            except ConcurrentModificationError as e:
                logger.warning(
                    "Conflict %s for %s, attempt %d/%d: %s",
                    operation, owner_id, attempt, self.max_attempts, e,
                )
        logger.error("Gave up %s for %s after %d attempts", operation, owner_id, self.max_attempts)
        raise TemporarilyUnavailableError(owner_id, self.max_attempts)

    def _issue(
        self,
        owner_id: str,
        amount: Decimal,
        credit_type: CreditType,
        description: Optional[str],
        source_event_ref: Optional[str],
        ttl: Optional[timedelta],
        created_by: Optional[str],
    ) -> IssuanceResult:
        now = self.clock()
        kind = EntryKind.REFUNDED if credit_type == CreditType.REFUND else EntryKind.EARNED
        try:
            with self.storage.transaction():
                self.storage.lock_owner(owner_id)
                self.sweeper.sweep(owner_id, now)
                balance_before = self.balance.get_balance(owner_id, now)
                lot = self.lots.issue_lot(
                    owner_id, amount, credit_type, source_event_ref, ttl, description, created_by
                )
                entry = self.ledger.append(LedgerEntry(
                    id=uuid4(),
                    owner_id=owner_id,
                    kind=kind,
                    amount=lot.original_amount,
                    balance_before=balance_before,
                    balance_after=balance_before + lot.original_amount,
                    related_lot_id=lot.id,
                    related_event_ref=source_event_ref,
                    description=description,
                    created_by=created_by,
                    created_at=lot.issued_at,
                ))
        except ConsistencyViolationError:
            logger.exception("Consistency violation issuing %s %s credit to %s", amount, credit_type.value, owner_id)
            raise

        return IssuanceResult(lot=lot, ledger_entry=entry, message="Credit issued successfully")

    def _idempotent_result(self, lot: CreditLot) -> IssuanceResult:
        logger.info("Credit for %s already issued to %s as lot %s", lot.source_event_ref, lot.owner_id, lot.id)
        return IssuanceResult(
            lot=lot,
            ledger_entry=self.ledger.entry_for_lot(lot.owner_id, lot.id, EntryKind.EARNED, EntryKind.REFUNDED),
            message="Credit already issued (idempotent return)",
        )

    def consume(self, owner_id: str, amount: Decimal, consuming_event_ref: str) -> ConsumptionResult:
        return self.engine.consume(owner_id, amount, consuming_event_ref)

    def get_balance(self, owner_id: str, as_of: Optional[datetime] = None) -> Decimal:
        return self.balance.get_balance(owner_id, as_of)

    def get_credit_balance(self, owner_id: str) -> CreditBalance:
        as_of = self.clock()
        usable = self.lots.list_usable_lots(owner_id, as_of)
        return CreditBalance(
            owner_id=owner_id,
            balance=sum((lot.remaining_amount for lot in usable), Decimal("0")),
            usable_lots=len(usable),
            as_of=as_of,
        )

    def get_history(self, owner_id: str) -> list[LedgerEntry]:
        return self.ledger.get_history(owner_id)

    def get_ledger_history(self, owner_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = list(reversed(self.get_history(owner_id)))
        return LedgerHistoryResponse(
            owner_id=owner_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=self.get_balance(owner_id),
        )

    def get_lot(self, lot_id: UUID) -> CreditLot:
        return self.lots.get_lot(lot_id)

    def list_lots(self, owner_id: str, usable_only: bool = False) -> list[CreditLot]:
        if usable_only:
            return self.lots.list_usable_lots(owner_id)
        return self.lots.list_lots(owner_id)

    def expire_credits(self, owner_id: str, as_of: Optional[datetime] = None) -> ExpiryResult:
        now = self.clock()
        as_of = as_utc(as_of) or now
        if as_of > now:
            raise ValueError(f"Cannot expire credits as of {as_of}, later than now ({now})")

        def sweep() -> list[LedgerEntry]:
            with self.storage.transaction():
                self.storage.lock_owner(owner_id)
                return self.sweeper.sweep(owner_id, as_of)

        entries = self._retrying(owner_id, "expiring credits", sweep)
        return ExpiryResult(
            owner_id=owner_id,
            expired_amount=sum((e.amount for e in entries), Decimal("0")),
            entries=entries,
        )

    def expire_all_credits(self, as_of: Optional[datetime] = None) -> BulkExpiryResult:
        """Maintenance run: record every lapsed lot of every owner, one owner per transaction."""
        as_of = as_of or self.clock()
        results = []
        skipped = []
        for owner_id in self.lots.list_owners_with_expired_lots(as_of):
            try:
                result = self.expire_credits(owner_id, as_of)
            except TemporarilyUnavailableError:
                skipped.append(owner_id)
                continue
            if result.entries:
                results.append(result)

        expired_lots = sum(len(r.entries) for r in results)
        logger.info(
            "Expiry run as of %s expired %d lot(s) across %d owner(s), skipped %d",
            as_of, expired_lots, len(results), len(skipped),
        )
        return BulkExpiryResult(
            owners_processed=len(results),
            owners_skipped=skipped,
            expired_lots=expired_lots,
            expired_amount=sum((r.expired_amount for r in results), Decimal("0")),
            results=results,
        )

    def get_summary(self, owner_id: str) -> CreditsSummary:
        return self.balance.get_summary(owner_id)

    def list_summaries(self) -> list[CreditsSummary]:
        """Summaries of every owner holding credit, largest available balance first."""
        summaries = [self.get_summary(owner_id) for owner_id in self.lots.list_owner_ids()]
        summaries.sort(key=lambda s: (-s.available_balance, s.owner_id))
        return summaries

    def reconcile(self, owner_id: str) -> ReconciliationReport:
        with self.storage.transaction():
            # Lots and history are read under the owner lock so they describe one state
            self.storage.lock_owner(owner_id)
            live_balance = self.get_balance(owner_id)
            history = self.get_history(owner_id)
            chain_intact = self.ledger.verify_chain(owner_id)

        ledger_balance = history[-1].balance_after if history else Decimal("0")
        consistent = chain_intact and ledger_balance == live_balance
        if not consistent:
            logger.error(
                "Credit ledger for %s does not reconcile: ledger %s, live %s, chain intact %s",
                owner_id, ledger_balance, live_balance, chain_intact,
            )
        return ReconciliationReport(
            owner_id=owner_id,
            live_balance=live_balance,
            ledger_balance=ledger_balance,
            entry_count=len(history),
            chain_intact=chain_intact,
            consistent=consistent,
        )


def build_service(settings: Settings) -> CreditLedgerService:
    """Wire a service from settings: SQL storage when a database URL is configured."""
    storage: LedgerRepository
    if settings.database_url:
        if settings.database_url.startswith("sqlite") and ":memory:" in settings.database_url:
            engine = create_engine(
                settings.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(settings.database_url, pool_pre_ping=True)
        storage = SqlAlchemyStorage(engine)
        if settings.create_schema:
            storage.create_schema()
    else:
        logger.warning("No database configured, credit ledger is running on in-memory storage")
        storage = InMemoryStorage()

    return CreditLedgerService(
        storage=storage,
        policy=CancellationPolicy(quantum=settings.amount_quantum),
        cancellation_ttl=timedelta(days=settings.cancellation_credit_ttl_days),
        max_attempts=settings.consume_max_attempts,
    )
