"""
Storage backends for the credit ledger.

The engine only talks to a ``LedgerRepository``; nothing in the package keeps
module-level state, so every service is built around the repository handed to it.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from .errors import (
    ConcurrentModificationError,
    ConsistencyViolationError,
    DuplicateIssuanceError,
    NotFoundError,
    WriteConflictError,
)
from .models import CreditLot, CreditType, EntryKind, LedgerEntry


class LedgerRepository(ABC):
    """Persistence contract for credit lots and ledger entries.

    All writes performed inside one ``transaction()`` block commit together or
    not at all. ``compare_and_decrement`` is the only way a stored lot changes
    after insertion.
    """

    @abstractmethod
    def transaction(self) -> Iterator[None]:
        ...

    @abstractmethod
    def lock_owner(self, owner_id: str) -> None:
        """Block other writers of ``owner_id`` until the enclosing transaction ends."""

    @abstractmethod
    def add_lot(self, lot: CreditLot) -> CreditLot:
        """Insert a new lot and return it with its insertion sequence.

        Raises DuplicateIssuanceError when a lot with the same owner,
        source_event_ref and credit_type already exists.
        """

    @abstractmethod
    def get_lot(self, lot_id: UUID) -> CreditLot:
        ...

    @abstractmethod
    def find_lot_by_source(
        self, owner_id: str, source_event_ref: str, credit_type: CreditType
    ) -> Optional[CreditLot]:
        ...

    @abstractmethod
    def list_lots(self, owner_id: str) -> list[CreditLot]:
        """All lots of an owner, oldest first (issued_at, then insertion sequence)."""

    @abstractmethod
    def list_owner_ids(self) -> list[str]:
        """Every owner that holds at least one lot, sorted."""

    @abstractmethod
    def list_owners_with_expired_lots(self, as_of: datetime) -> list[str]:
        """Owners holding an unconsumed lot past its expiry that has no ``expired`` entry yet."""

    @abstractmethod
    def compare_and_decrement(
        self, lot_id: UUID, amount: Decimal, expected_version: int, now: datetime
    ) -> CreditLot:
        """Subtract ``amount`` from a lot if its version still equals ``expected_version``.

        Raises ConcurrentModificationError on a version mismatch and
        ConsistencyViolationError if the lot holds less than ``amount``.
        """

    @abstractmethod
    def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Store an entry at ``entry.position`` of its owner's chain.

        Raises WriteConflictError when that position is already taken, which
        means another writer extended the chain since it was read.
        """

    @abstractmethod
    def list_entries(self, owner_id: str) -> list[LedgerEntry]:
        """Entries of an owner in the order they were appended."""

    @abstractmethod
    def latest_entry(self, owner_id: str) -> Optional[LedgerEntry]:
        ...

    @abstractmethod
    def has_entry_for_lot(self, lot_id: UUID, kind: EntryKind) -> bool:
        ...


class _UndoLog:
    """What a top-level in-memory transaction changed, enough to reverse it."""

    def __init__(self, entry_count: int, sequence: int):
        self.entry_count = entry_count
        self.sequence = sequence
        self.added_lots: list[UUID] = []
        self.added_sources: list[tuple] = []
        self.changed_lots: dict[UUID, dict] = {}


class InMemoryStorage(LedgerRepository):
    def __init__(self):
        self.lots: dict[UUID, dict] = {}
        self.ledger_entries: list[dict] = []
        self.source_index: dict[tuple, UUID] = {}
        self._sequence = 0
        self._lock = threading.RLock()
        self._undo: Optional[_UndoLog] = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._undo is not None:
                yield
                return

            self._undo = _UndoLog(len(self.ledger_entries), self._sequence)
            try:
                yield
            except BaseException:
                self._rollback(self._undo)
                raise
            finally:
                self._undo = None

    def _rollback(self, undo: _UndoLog) -> None:
        del self.ledger_entries[undo.entry_count:]
        for lot_id, original in undo.changed_lots.items():
            self.lots[lot_id] = original
        for lot_id in undo.added_lots:
            self.lots.pop(lot_id, None)
        for key in undo.added_sources:
            self.source_index.pop(key, None)
        self._sequence = undo.sequence

    def lock_owner(self, owner_id: str) -> None:
        # Transactions already hold the store-wide lock
        pass

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def add_lot(self, lot: CreditLot) -> CreditLot:
        with self._lock:
            key = None
            if lot.source_event_ref is not None:
                key = (lot.owner_id, lot.source_event_ref, lot.credit_type)
                if key in self.source_index:
                    raise DuplicateIssuanceError(lot.owner_id, lot.source_event_ref, lot.credit_type)

            lot_data = lot.model_dump()
            lot_data["sequence"] = self._next_sequence()
            self.lots[lot.id] = lot_data
            if key is not None:
                self.source_index[key] = lot.id
            if self._undo is not None:
                self._undo.added_lots.append(lot.id)
                if key is not None:
                    self._undo.added_sources.append(key)
            return CreditLot(**lot_data)

    def get_lot(self, lot_id: UUID) -> CreditLot:
        with self._lock:
            lot_data = self.lots.get(lot_id)
            if not lot_data:
                raise NotFoundError(f"Credit lot {lot_id} not found")
            return CreditLot(**lot_data)

    def find_lot_by_source(
        self, owner_id: str, source_event_ref: str, credit_type: CreditType
    ) -> Optional[CreditLot]:
        with self._lock:
            lot_id = self.source_index.get((owner_id, source_event_ref, credit_type))
            if lot_id is None:
                return None
            return CreditLot(**self.lots[lot_id])

    def list_lots(self, owner_id: str) -> list[CreditLot]:
        with self._lock:
            lots = [CreditLot(**data) for data in self.lots.values() if data["owner_id"] == owner_id]
        lots.sort(key=lambda lot: (lot.issued_at, lot.sequence))
        return lots

    def list_owner_ids(self) -> list[str]:
        with self._lock:
            return sorted({data["owner_id"] for data in self.lots.values()})

    def list_owners_with_expired_lots(self, as_of: datetime) -> list[str]:
        with self._lock:
            swept = {e["related_lot_id"] for e in self.ledger_entries if e["kind"] == EntryKind.EXPIRED}
            return sorted({
                data["owner_id"] for lot_id, data in self.lots.items()
                if not data["consumed"]
                and data["expires_at"] is not None
                and data["expires_at"] <= as_of
                and lot_id not in swept
            })

    def compare_and_decrement(
        self, lot_id: UUID, amount: Decimal, expected_version: int, now: datetime
    ) -> CreditLot:
        with self._lock:
            lot_data = self.lots.get(lot_id)
            if not lot_data:
                raise NotFoundError(f"Credit lot {lot_id} not found")
            if lot_data["version"] != expected_version:
                raise ConcurrentModificationError(lot_id, expected_version, lot_data["version"])
            if amount > lot_data["remaining_amount"]:
                raise ConsistencyViolationError(
                    f"Decrement of {amount} exceeds remaining {lot_data['remaining_amount']} on lot {lot_id}"
                )

            if self._undo is not None and lot_id not in self._undo.changed_lots:
                self._undo.changed_lots[lot_id] = dict(lot_data)
            lot_data = dict(lot_data)
            lot_data["remaining_amount"] -= amount
            lot_data["version"] += 1
            if lot_data["remaining_amount"] == 0:
                lot_data["consumed"] = True
                lot_data["consumed_at"] = now
            self.lots[lot_id] = lot_data
            return CreditLot(**lot_data)

    def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            latest = self._latest_entry_data(entry.owner_id)
            next_position = latest["position"] + 1 if latest else 1
            if entry.position != next_position:
                raise WriteConflictError(
                    entry.owner_id, f"ledger position {entry.position} taken, next free is {next_position}"
                )
            entry_data = entry.model_dump()
            entry_data["sequence"] = self._next_sequence()
            self.ledger_entries.append(entry_data)
            return LedgerEntry(**entry_data)

    def list_entries(self, owner_id: str) -> list[LedgerEntry]:
        with self._lock:
            return [LedgerEntry(**e) for e in self.ledger_entries if e["owner_id"] == owner_id]

    def _latest_entry_data(self, owner_id: str) -> Optional[dict]:
        for entry_data in reversed(self.ledger_entries):
            if entry_data["owner_id"] == owner_id:
                return entry_data
        return None

    def latest_entry(self, owner_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            entry_data = self._latest_entry_data(owner_id)
            return LedgerEntry(**entry_data) if entry_data else None

    def has_entry_for_lot(self, lot_id: UUID, kind: EntryKind) -> bool:
        with self._lock:
            return any(
                e["related_lot_id"] == lot_id and e["kind"] == kind for e in self.ledger_entries
            )
