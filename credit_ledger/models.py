from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

# Storage precision of every amount
AMOUNT_DIGITS = 18
AMOUNT_PLACES = 4
AMOUNT_SCALE = Decimal(1).scaleb(-AMOUNT_PLACES)
MAX_AMOUNT = Decimal(1).scaleb(AMOUNT_DIGITS - AMOUNT_PLACES)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CreditType(str, Enum):
    CANCELLATION = "cancellation"
    REFUND = "refund"
    PROMOTION = "promotion"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class EntryKind(str, Enum):
    EARNED = "earned"
    USED = "used"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def is_credit(self) -> bool:
        return self in (EntryKind.EARNED, EntryKind.REFUNDED)


class CreditLot(BaseModel):
    id: UUID
    owner_id: str
    original_amount: Decimal
    remaining_amount: Decimal
    credit_type: CreditType
    description: Optional[str] = None
    issued_at: datetime
    expires_at: Optional[datetime] = None
    consumed: bool = False
    consumed_at: Optional[datetime] = None
    source_event_ref: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 0
    sequence: int = 0

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, as_of: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= as_of

    def is_usable(self, as_of: datetime) -> bool:
        return not self.consumed and not self.is_expired(as_of)


class LedgerEntry(BaseModel):
    id: UUID
    owner_id: str
    kind: EntryKind
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    related_lot_id: Optional[UUID] = None
    related_event_ref: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    position: int = 0  # 1-based place in the owner's chain
    sequence: int = 0

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.kind.is_credit else -self.amount


class CancellationQuote(BaseModel):
    eligible: bool
    credit_amount: Decimal
    percentage: int
    hours_remaining: float


class CancellationQuoteRequest(BaseModel):
    paid_amount: Decimal
    scheduled_event_time: datetime
    cancellation_time: Optional[datetime] = None

    @field_validator("scheduled_event_time", "cancellation_time")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class CancellationRequest(BaseModel):
    owner_id: str
    source_event_ref: str = Field(..., description="Reference of the cancelled appointment or class")
    paid_amount: Decimal
    scheduled_event_time: datetime
    cancellation_time: Optional[datetime] = None
    description: Optional[str] = None

    @field_validator("scheduled_event_time", "cancellation_time")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "owner_id": "550e8400-e29b-41d4-a716-446655440000",
            "source_event_ref": "appointment-8812",
            "paid_amount": 200000,
            "scheduled_event_time": "2026-10-20T15:00:00Z",
            "description": "Cancellation credit for massage session",
        }
    })


class CancellationOutcome(BaseModel):
    quote: CancellationQuote
    lot: Optional[CreditLot] = None
    ledger_entry: Optional[LedgerEntry] = None
    message: str

    @property
    def lot_id(self) -> Optional[UUID]:
        return self.lot.id if self.lot else None


class IssueCreditRequest(BaseModel):
    owner_id: str
    amount: Decimal
    credit_type: CreditType
    description: Optional[str] = None
    source_event_ref: Optional[str] = None
    ttl_days: Optional[int] = Field(default=None, gt=0, description="Days until the credit expires; never expires if omitted")
    created_by: Optional[str] = Field(default=None, description="Admin or system that granted the credit")


class IssuanceResult(BaseModel):
    lot: CreditLot
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class ConsumeCreditRequest(BaseModel):
    amount: Decimal
    consuming_event_ref: str = Field(..., description="Reference of the purchase paid with credits")


class ConsumptionResult(BaseModel):
    owner_id: str
    success: bool
    amount: Decimal
    balance_after: Decimal
    entries: list[LedgerEntry]
    attempts: int = 1


class ExpiryResult(BaseModel):
    owner_id: str
    expired_amount: Decimal
    entries: list[LedgerEntry]


class BulkExpiryResult(BaseModel):
    owners_processed: int
    owners_skipped: list[str] = []
    expired_lots: int
    expired_amount: Decimal
    results: list[ExpiryResult]


class CreditBalance(BaseModel):
    owner_id: str
    balance: Decimal
    usable_lots: int
    as_of: datetime


class LedgerHistoryResponse(BaseModel):
    owner_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class CreditsSummary(BaseModel):
    owner_id: str
    available_balance: Decimal
    total_earned: Decimal
    total_used: Decimal
    total_expired: Decimal
    active_credits_count: int


class ReconciliationReport(BaseModel):
    owner_id: str
    live_balance: Decimal
    ledger_balance: Decimal
    entry_count: int
    chain_intact: bool
    consistent: bool
