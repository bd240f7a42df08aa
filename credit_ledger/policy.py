from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .models import AMOUNT_SCALE, CancellationQuote, as_utc


@dataclass(frozen=True)
class CreditTier:
    min_hours: float
    fraction: Decimal

    @property
    def percentage(self) -> int:
        return int(self.fraction * 100)


DEFAULT_TIERS = (
    CreditTier(24, Decimal("1.00")),
    CreditTier(12, Decimal("0.75")),
    CreditTier(4, Decimal("0.50")),
    CreditTier(0, Decimal("0.25")),
)


@dataclass(frozen=True)
class CancellationPolicy:
    """Maps how early an event was cancelled to the share of the paid amount returned as credit.

    Tiers are checked from the largest ``min_hours`` down; a tier applies when
    ``hours_remaining >= min_hours``. The lowest tier only applies while the
    event is still in the future. Credit amounts are rounded half-up to
    ``quantum`` (whole currency units by default).
    """

    tiers: tuple[CreditTier, ...] = DEFAULT_TIERS
    quantum: Decimal = Decimal("1")

    def __post_init__(self):
        if self.quantum < AMOUNT_SCALE:
            raise ValueError(f"Credit quantum {self.quantum} is finer than the stored precision {AMOUNT_SCALE}")
        object.__setattr__(
            self, "tiers", tuple(sorted(self.tiers, key=lambda t: t.min_hours, reverse=True))
        )

    def tier_for(self, hours_remaining: float) -> Optional[CreditTier]:
        if hours_remaining <= 0:
            return None
        for tier in self.tiers:
            if hours_remaining >= tier.min_hours:
                return tier
        return None

    def quote(
        self,
        paid_amount: Decimal,
        scheduled_event_time: datetime,
        cancellation_time: Optional[datetime] = None,
    ) -> CancellationQuote:
        scheduled_event_time = as_utc(scheduled_event_time)
        cancellation_time = as_utc(cancellation_time) or datetime.now(timezone.utc)
        hours_remaining = (scheduled_event_time - cancellation_time).total_seconds() / 3600

        tier = self.tier_for(hours_remaining) if paid_amount > 0 else None
        if tier is None:
            return CancellationQuote(
                eligible=False,
                credit_amount=Decimal("0"),
                percentage=0,
                hours_remaining=hours_remaining,
            )

        credit_amount = (Decimal(paid_amount) * tier.fraction).quantize(self.quantum, rounding=ROUND_HALF_UP)
        return CancellationQuote(
            eligible=credit_amount > 0,
            credit_amount=credit_amount,
            percentage=tier.percentage,
            hours_remaining=hours_remaining,
        )


def calculate_cancellation_credit(
    paid_amount: Decimal,
    scheduled_event_time: datetime,
    cancellation_time: Optional[datetime] = None,
    policy: Optional[CancellationPolicy] = None,
) -> CancellationQuote:
    return (policy or CancellationPolicy()).quote(paid_amount, scheduled_event_time, cancellation_time)
