"""
Unit Tests for the Credit Ledger Service

Tests cover:
1. Cancellation credit flow (end to end)
2. Idempotent issuance
3. Manual credits
4. Expiration and the expiry sweep
5. Balance, history, summary and reconciliation
6. Maintenance across all owners
7. Retry of contended issuance
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from conftest import OWNER_ID, OTHER_OWNER_ID, assert_reconciled
from credit_ledger.errors import (
    InvalidAmountError,
    NotFoundError,
    TemporarilyUnavailableError,
    WriteConflictError,
)
from credit_ledger.models import CreditType, EntryKind
from credit_ledger.service import CreditLedgerService
from credit_ledger.storage import InMemoryStorage


class TestCancellationCreditFlow:
    """Tests for credits earned by cancelling."""

    def test_cancel_then_spend(self, service, clock):
        """A cancelled appointment becomes credit that pays part of a new booking."""
        assert service.get_balance(OWNER_ID) == Decimal("0")

        outcome = service.on_cancellation(
            OWNER_ID,
            source_event_ref="appointment-100",
            paid_amount=Decimal("200000"),
            scheduled_event_time=clock.now + timedelta(hours=26),
            description="Cancelled hyperbaric session",
        )

        # One new lot, one earned entry
        assert outcome.quote.eligible is True
        assert outcome.quote.percentage == 100
        assert outcome.lot is not None
        assert outcome.lot_id == outcome.lot.id
        assert outcome.lot.original_amount == Decimal("200000")
        assert outcome.lot.credit_type == CreditType.CANCELLATION
        assert outcome.lot.source_event_ref == "appointment-100"
        assert service.get_balance(OWNER_ID) == Decimal("200000")

        history = service.get_history(OWNER_ID)
        assert len(history) == 1
        assert history[0].kind == EntryKind.EARNED
        assert history[0].balance_before == Decimal("0")
        assert history[0].balance_after == Decimal("200000")
        assert history[0].related_lot_id == outcome.lot.id

        # Spend part of it
        result = service.consume(OWNER_ID, Decimal("150000"), "booking-200")

        assert result.success is True
        lot = service.get_lot(outcome.lot.id)
        assert lot.remaining_amount == Decimal("50000")
        assert lot.consumed is False

        history = service.get_history(OWNER_ID)
        assert len(history) == 2
        assert history[1].kind == EntryKind.USED
        assert history[1].amount == Decimal("150000")
        assert history[1].balance_before == Decimal("200000")
        assert history[1].balance_after == Decimal("50000")
        assert service.get_balance(OWNER_ID) == Decimal("50000")
        assert_reconciled(service, OWNER_ID)

    def test_late_cancellation_earns_partial_credit(self, service, clock):
        outcome = service.on_cancellation(
            OWNER_ID, "appointment-101", Decimal("100000"), clock.now + timedelta(hours=10)
        )

        assert outcome.lot.original_amount == Decimal("50000")
        assert "50%" in outcome.lot.description
        assert service.get_balance(OWNER_ID) == Decimal("50000")

    def test_cancellation_after_event_is_ineligible(self, service, clock):
        outcome = service.on_cancellation(
            OWNER_ID, "appointment-102", Decimal("100000"), clock.now - timedelta(hours=1)
        )

        assert outcome.quote.eligible is False
        assert outcome.lot is None
        assert outcome.lot_id is None
        assert outcome.ledger_entry is None
        assert "not eligible" in outcome.message
        assert service.get_history(OWNER_ID) == []
        assert service.list_lots(OWNER_ID) == []

    def test_explicit_cancellation_time(self, service, clock):
        event = clock.now + timedelta(hours=30)
        outcome = service.on_cancellation(
            OWNER_ID, "appointment-103", Decimal("100000"), event,
            cancellation_time=event - timedelta(hours=2),
        )
        assert outcome.lot.original_amount == Decimal("25000")

    def test_cancellation_credit_expires_after_a_year(self, service, clock):
        outcome = service.on_cancellation(
            OWNER_ID, "appointment-104", Decimal("100000"), clock.now + timedelta(days=2)
        )
        assert outcome.lot.expires_at == clock.now + timedelta(days=365)


class TestIdempotentIssuance:
    """Repeated issuance for the same event is a no-op."""

    def test_repeated_cancellation_returns_existing_lot(self, service, clock):
        event = clock.now + timedelta(days=2)
        first = service.on_cancellation(OWNER_ID, "appointment-110", Decimal("80000"), event)
        second = service.on_cancellation(OWNER_ID, "appointment-110", Decimal("80000"), event)

        assert second.lot.id == first.lot.id
        assert second.ledger_entry.id == first.ledger_entry.id
        assert "already issued" in second.message.lower()

        # Balance should not double
        assert service.get_balance(OWNER_ID) == Decimal("80000")
        assert len(service.get_history(OWNER_ID)) == 1

    def test_same_event_different_credit_type(self, service):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.CANCELLATION, source_event_ref="appointment-111")
        service.issue_credit(OWNER_ID, Decimal("40"), CreditType.REFUND, source_event_ref="appointment-111")

        assert service.get_balance(OWNER_ID) == Decimal("140")
        assert len(service.list_lots(OWNER_ID)) == 2

    def test_credits_without_source_accumulate(self, service):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)

        assert service.get_balance(OWNER_ID) == Decimal("200")


class TestManualCredits:
    """Tests for refund, promotion and admin adjustment credits."""

    def test_admin_adjustment(self, service):
        result = service.issue_credit(
            OWNER_ID, Decimal("25000"), CreditType.ADMIN_ADJUSTMENT,
            description="Goodwill credit after complaint",
        )

        assert result.lot.credit_type == CreditType.ADMIN_ADJUSTMENT
        assert result.lot.expires_at is None
        assert result.ledger_entry.kind == EntryKind.EARNED
        assert result.ledger_entry.description == "Goodwill credit after complaint"
        assert "issued successfully" in result.message

    def test_refund_is_recorded_as_refunded(self, service):
        result = service.issue_credit(OWNER_ID, Decimal("30000"), CreditType.REFUND)
        assert result.ledger_entry.kind == EntryKind.REFUNDED
        assert service.get_balance(OWNER_ID) == Decimal("30000")

    def test_rejects_non_positive_amount(self, service):
        with pytest.raises(InvalidAmountError):
            service.issue_credit(OWNER_ID, Decimal("0"), CreditType.PROMOTION)

        assert service.get_history(OWNER_ID) == []

    def test_balances_chain_across_issues(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        clock.advance(minutes=1)
        service.issue_credit(OWNER_ID, Decimal("250"), CreditType.REFUND)

        history = service.get_history(OWNER_ID)
        assert [(e.balance_before, e.balance_after) for e in history] == [
            (Decimal("0"), Decimal("100")),
            (Decimal("100"), Decimal("350")),
        ]


class TestExpiration:
    """Expired lots drop out of the balance and are recorded in the ledger."""

    def test_expired_lot_is_excluded(self, service, clock):
        expiring = service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=7)).lot
        service.issue_credit(OWNER_ID, Decimal("200"), CreditType.PROMOTION)

        clock.advance(days=8)

        assert service.get_balance(OWNER_ID) == Decimal("200")
        assert expiring.id not in [lot.id for lot in service.list_lots(OWNER_ID, usable_only=True)]
        assert expiring.id in [lot.id for lot in service.list_lots(OWNER_ID)]

    def test_partially_consumed_lot_expires_with_its_remainder(self, service, clock):
        lot = service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=7)).lot
        service.consume(OWNER_ID, Decimal("30"), "booking-300")

        clock.advance(days=8)
        result = service.expire_credits(OWNER_ID)

        assert result.expired_amount == Decimal("70")
        assert result.entries[0].related_lot_id == lot.id
        assert service.get_lot(lot.id).consumed is False
        assert_reconciled(service, OWNER_ID)

    def test_expire_credits_writes_one_entry_per_lot(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        service.issue_credit(OWNER_ID, Decimal("50"), CreditType.PROMOTION, ttl=timedelta(days=2))
        service.issue_credit(OWNER_ID, Decimal("200"), CreditType.PROMOTION)

        clock.advance(days=3)
        result = service.expire_credits(OWNER_ID)

        assert result.expired_amount == Decimal("150")
        assert [e.kind for e in result.entries] == [EntryKind.EXPIRED, EntryKind.EXPIRED]
        assert [(e.balance_before, e.balance_after) for e in result.entries] == [
            (Decimal("350"), Decimal("250")),
            (Decimal("250"), Decimal("200")),
        ]
        assert_reconciled(service, OWNER_ID)

        # Running again finds nothing new
        assert service.expire_credits(OWNER_ID).entries == []

    def test_spending_after_expiry_records_the_expiry_first(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        clock.advance(hours=1)
        service.issue_credit(OWNER_ID, Decimal("200"), CreditType.PROMOTION)
        clock.advance(days=2)

        service.consume(OWNER_ID, Decimal("50"), "booking-301")

        kinds = [e.kind for e in service.get_history(OWNER_ID)]
        assert kinds == [EntryKind.EARNED, EntryKind.EARNED, EntryKind.EXPIRED, EntryKind.USED]
        assert service.get_balance(OWNER_ID) == Decimal("150")
        assert_reconciled(service, OWNER_ID)

    def test_issuing_after_expiry_records_the_expiry_first(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        clock.advance(days=2)

        result = service.issue_credit(OWNER_ID, Decimal("40"), CreditType.PROMOTION)

        assert result.ledger_entry.balance_before == Decimal("0")
        assert result.ledger_entry.balance_after == Decimal("40")
        assert_reconciled(service, OWNER_ID)


class TestBalanceAndHistory:
    """Tests for read-side operations."""

    def test_unknown_owner_has_nothing(self, service):
        assert service.get_balance("nobody") == Decimal("0")
        assert service.get_history("nobody") == []

    def test_credit_balance(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.issue_credit(OWNER_ID, Decimal("20"), CreditType.PROMOTION)

        balance = service.get_credit_balance(OWNER_ID)

        assert balance.balance == Decimal("120")
        assert balance.usable_lots == 2
        assert balance.as_of == clock.now

    def test_ledger_history_newest_first(self, service, clock):
        for amount in ("10", "20", "30"):
            service.issue_credit(OWNER_ID, Decimal(amount), CreditType.PROMOTION)
            clock.advance(minutes=1)

        history = service.get_ledger_history(OWNER_ID, limit=2)

        assert history.total_count == 3
        assert [e.amount for e in history.entries] == [Decimal("30"), Decimal("20")]
        assert history.current_balance == Decimal("60")
        assert [e.amount for e in service.get_ledger_history(OWNER_ID, limit=2, offset=2).entries] == [Decimal("10")]

    def test_unknown_lot(self, service):
        with pytest.raises(NotFoundError):
            service.get_lot(uuid4())

    def test_summary(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        service.issue_credit(OWNER_ID, Decimal("300"), CreditType.CANCELLATION, source_event_ref="appointment-120")
        service.issue_credit(OWNER_ID, Decimal("50"), CreditType.REFUND)
        service.consume(OWNER_ID, Decimal("120"), "booking-400")
        clock.advance(days=2)
        service.expire_credits(OWNER_ID)

        summary = service.get_summary(OWNER_ID)

        assert summary.total_earned == Decimal("450")
        assert summary.total_used == Decimal("120")
        assert summary.total_expired == Decimal("0")  # the expiring lot was spent first
        assert summary.available_balance == Decimal("330")
        assert summary.active_credits_count == 2


class TestReconciliation:
    def test_consistent_ledger(self, service):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.consume(OWNER_ID, Decimal("40"), "booking-500")

        report = service.reconcile(OWNER_ID)

        assert report.consistent is True
        assert report.chain_intact is True
        assert report.live_balance == report.ledger_balance == Decimal("60")
        assert report.entry_count == 2

    def test_detects_lot_drift(self, service, storage):
        lot = service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION).lot
        storage.lots[lot.id]["remaining_amount"] = Decimal("90")

        report = service.reconcile(OWNER_ID)

        assert report.consistent is False
        assert report.chain_intact is True
        assert report.live_balance == Decimal("90")
        assert report.ledger_balance == Decimal("100")

    def test_detects_broken_chain(self, service, storage):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.issue_credit(OWNER_ID, Decimal("50"), CreditType.PROMOTION)
        storage.ledger_entries[1]["balance_before"] = Decimal("80")

        report = service.reconcile(OWNER_ID)

        assert report.chain_intact is False
        assert report.consistent is False


class RacedStorage(InMemoryStorage):
    """Another writer extends the chain before the next few appends land."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts

    def append_entry(self, entry):
        if self.conflicts:
            self.conflicts -= 1
            raise WriteConflictError(entry.owner_id, f"ledger position {entry.position} already taken")
        return super().append_entry(entry)


class TestNaiveTimestamps:
    def test_naive_event_time_is_read_as_utc(self, service, clock):
        event = (clock.now + timedelta(hours=30)).replace(tzinfo=None)

        outcome = service.on_cancellation(OWNER_ID, "appointment-60", Decimal("1000"), event)

        assert outcome.quote.percentage == 100
        assert service.get_balance(OWNER_ID) == Decimal("1000")

    def test_naive_expiry_cutoff(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        clock.advance(days=3)

        result = service.expire_credits(OWNER_ID, as_of=(clock.now - timedelta(days=1)).replace(tzinfo=None))

        assert result.expired_amount == Decimal("100")


class TestIssuer:
    def test_admin_credit_records_issuer(self, service):
        result = service.issue_credit(
            OWNER_ID, Decimal("5000"), CreditType.ADMIN_ADJUSTMENT,
            description="Compensation", created_by="admin-3",
        )

        assert result.lot.created_by == "admin-3"
        assert result.ledger_entry.created_by == "admin-3"
        assert service.get_history(OWNER_ID)[0].created_by == "admin-3"

    def test_issuer_is_optional(self, service):
        result = service.issue_credit(OWNER_ID, Decimal("10"), CreditType.PROMOTION)
        assert result.lot.created_by is None


class TestContendedIssuance:
    """Issuance that loses the chain to another writer starts over."""

    def test_retried_after_conflict(self, clock):
        storage = RacedStorage(conflicts=1)
        service = CreditLedgerService(storage=storage, clock=clock)

        result = service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)

        assert len(service.list_lots(OWNER_ID)) == 1
        assert service.list_lots(OWNER_ID)[0].id == result.lot.id
        assert result.ledger_entry.position == 1
        assert_reconciled(service, OWNER_ID)

    def test_gives_up_after_max_attempts(self, clock):
        storage = RacedStorage(conflicts=3)
        service = CreditLedgerService(storage=storage, clock=clock, max_attempts=3)

        with pytest.raises(TemporarilyUnavailableError) as exc_info:
            service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)

        assert exc_info.value.attempts == 3
        assert service.list_lots(OWNER_ID) == []
        assert service.get_history(OWNER_ID) == []


class TestChainPositions:
    def test_entries_are_numbered_per_owner(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.issue_credit(OTHER_OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.consume(OWNER_ID, Decimal("30"), "booking-61")

        assert [e.position for e in service.get_history(OWNER_ID)] == [1, 2]
        assert [e.position for e in service.get_history(OTHER_OWNER_ID)] == [1]

    def test_stale_position_is_refused(self, service, storage):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        first = service.get_history(OWNER_ID)[0]

        with pytest.raises(WriteConflictError):
            storage.append_entry(first.model_copy(update={"id": uuid4()}))

        assert len(service.get_history(OWNER_ID)) == 1


class TestExpireCreditsAsOf:
    def test_past_cutoff_only_expires_lots_lapsed_by_then(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        service.issue_credit(OWNER_ID, Decimal("200"), CreditType.PROMOTION, ttl=timedelta(days=5))
        clock.advance(days=10)

        result = service.expire_credits(OWNER_ID, as_of=clock.now - timedelta(days=7))

        assert result.expired_amount == Decimal("100")
        assert service.expire_credits(OWNER_ID).expired_amount == Decimal("200")
        assert_reconciled(service, OWNER_ID)

    def test_future_cutoff_is_rejected(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))

        with pytest.raises(ValueError):
            service.expire_credits(OWNER_ID, as_of=clock.now + timedelta(days=2))

        assert len(service.get_history(OWNER_ID)) == 1


class TestMaintenance:
    """Expiry runs and summaries across every owner."""

    def test_expire_all_credits(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        service.issue_credit(OWNER_ID, Decimal("50"), CreditType.PROMOTION, ttl=timedelta(days=2))
        service.issue_credit(OTHER_OWNER_ID, Decimal("70"), CreditType.PROMOTION, ttl=timedelta(days=1))
        service.issue_credit(OTHER_OWNER_ID, Decimal("30"), CreditType.PROMOTION)
        clock.advance(days=3)

        run = service.expire_all_credits()

        assert run.owners_processed == 2
        assert run.owners_skipped == []
        assert run.expired_lots == 3
        assert run.expired_amount == Decimal("220")
        assert service.get_balance(OTHER_OWNER_ID) == Decimal("30")
        assert_reconciled(service, OWNER_ID)
        assert_reconciled(service, OTHER_OWNER_ID)

    def test_expire_all_credits_is_repeatable(self, service, clock):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION, ttl=timedelta(days=1))
        clock.advance(days=2)
        service.expire_all_credits()

        run = service.expire_all_credits()

        assert run.owners_processed == 0
        assert run.expired_amount == Decimal("0")
        assert len(service.get_history(OWNER_ID)) == 2

    def test_nothing_to_expire(self, service):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        assert service.expire_all_credits().expired_lots == 0

    def test_summaries_by_available_balance(self, service):
        service.issue_credit(OWNER_ID, Decimal("100"), CreditType.PROMOTION)
        service.issue_credit(OTHER_OWNER_ID, Decimal("400"), CreditType.PROMOTION)
        service.consume(OTHER_OWNER_ID, Decimal("350"), "booking-62")

        summaries = service.list_summaries()

        assert [s.owner_id for s in summaries] == [OWNER_ID, OTHER_OWNER_ID]
        assert summaries[0].available_balance == Decimal("100")
        assert summaries[1].total_used == Decimal("350")

    def test_no_summaries_without_credit(self, service):
        assert service.list_summaries() == []
