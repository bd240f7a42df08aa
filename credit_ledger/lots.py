import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import InvalidAmountError
from .models import AMOUNT_PLACES, AMOUNT_SCALE, MAX_AMOUNT, CreditLot, CreditType
from .storage import LedgerRepository

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_TTL = timedelta(days=365)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_amount(amount: Optional[Decimal], label: str) -> Decimal:
    """Reject amounts that are not positive or that storage could not hold exactly."""
    if amount is None or amount <= 0:
        raise InvalidAmountError(f"{label} must be positive, got {amount}")
    amount = Decimal(amount)
    if amount >= MAX_AMOUNT:
        raise InvalidAmountError(f"{label} {amount} exceeds the largest storable amount")
    if amount != amount.quantize(AMOUNT_SCALE):
        raise InvalidAmountError(f"{label} {amount} has more than {AMOUNT_PLACES} decimal places")
    return amount


class CreditLotStore:
    """Owns the discrete credit lots of every owner.

    Lots are created by ``issue_lot`` and afterwards only shrink through
    ``decrement_lot``. Expired lots stay stored for audit and are filtered out
    by ``list_usable_lots``.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        cancellation_ttl: Optional[timedelta] = DEFAULT_CANCELLATION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.cancellation_ttl = cancellation_ttl
        self.clock = clock

    def issue_lot(
        self,
        owner_id: str,
        amount: Decimal,
        credit_type: CreditType,
        source_event_ref: Optional[str] = None,
        ttl: Optional[timedelta] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CreditLot:
        amount = check_amount(amount, "Credit amount")

        if ttl is None and credit_type == CreditType.CANCELLATION:
            ttl = self.cancellation_ttl
        if ttl is not None and ttl <= timedelta(0):
            raise ValueError(f"Credit lifetime must be positive, got {ttl}")

        issued_at = self.clock()
        lot = CreditLot(
            id=uuid4(),
            owner_id=owner_id,
            original_amount=amount,
            remaining_amount=amount,
            credit_type=credit_type,
            description=description,
            issued_at=issued_at,
            expires_at=issued_at + ttl if ttl is not None else None,
            source_event_ref=source_event_ref,
            created_by=created_by,
        )
        lot = self.repository.add_lot(lot)
        logger.info(
            "Issued %s credit lot %s of %s to %s (expires %s)",
            credit_type.value, lot.id, amount, owner_id, lot.expires_at,
        )
        return lot

    def get_lot(self, lot_id: UUID) -> CreditLot:
        return self.repository.get_lot(lot_id)

    def find_issued(
        self, owner_id: str, source_event_ref: str, credit_type: CreditType
    ) -> Optional[CreditLot]:
        return self.repository.find_lot_by_source(owner_id, source_event_ref, credit_type)

    def list_lots(self, owner_id: str) -> list[CreditLot]:
        return self.repository.list_lots(owner_id)

    def list_owner_ids(self) -> list[str]:
        return self.repository.list_owner_ids()

    def list_owners_with_expired_lots(self, as_of: Optional[datetime] = None) -> list[str]:
        return self.repository.list_owners_with_expired_lots(as_of or self.clock())

    def list_usable_lots(self, owner_id: str, as_of: Optional[datetime] = None) -> list[CreditLot]:
        as_of = as_of or self.clock()
        return [lot for lot in self.repository.list_lots(owner_id) if lot.is_usable(as_of)]

    def list_expired_lots(self, owner_id: str, as_of: Optional[datetime] = None) -> list[CreditLot]:
        """Unconsumed lots whose expiry has passed, soonest expiry first."""
        as_of = as_of or self.clock()
        expired = [
            lot for lot in self.repository.list_lots(owner_id)
            if not lot.consumed and lot.is_expired(as_of)
        ]
        expired.sort(key=lambda lot: (lot.expires_at, lot.sequence))
        return expired

    def decrement_lot(self, lot_id: UUID, amount: Decimal, expected_version: int) -> Decimal:
        amount = check_amount(amount, "Decrement amount")
        lot = self.repository.compare_and_decrement(lot_id, amount, expected_version, self.clock())
        return lot.remaining_amount
