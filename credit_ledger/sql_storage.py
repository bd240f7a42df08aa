"""Relational storage for credit lots and ledger entries (SQLAlchemy)."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    exists,
    inspect,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import (
    ConcurrentModificationError,
    ConsistencyViolationError,
    DuplicateIssuanceError,
    LedgerNotProvisionedError,
    NotFoundError,
    WriteConflictError,
)
from .models import AMOUNT_DIGITS, AMOUNT_PLACES, CreditLot, CreditType, EntryKind, LedgerEntry, as_utc
from .storage import LedgerRepository

logger = logging.getLogger(__name__)

Base = declarative_base()

# Serialization failure and deadlock on PostgreSQL
CONTENTION_SQLSTATES = {"40001", "40P01"}


class CreditOwnerRow(Base):
    """One row per owner; updating it serializes writers of that owner."""

    __tablename__ = "credit_owners"

    owner_id = Column(String(255), primary_key=True)
    write_count = Column(Integer, nullable=False, default=0)


class CreditLotRow(Base):
    """A partially consumable credit grant. Rows are never deleted."""

    __tablename__ = "credit_lots"
    __table_args__ = (
        UniqueConstraint("owner_id", "source_event_ref", "credit_type", name="uq_credit_lots_source"),
    )

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    original_amount = Column(Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    remaining_amount = Column(Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    credit_type = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    source_event_ref = Column(String(255), nullable=True)
    created_by = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=0)


class LedgerEntryRow(Base):
    """Append-only audit record with before/after balance snapshots."""

    __tablename__ = "credit_ledger_entries"
    __table_args__ = (
        UniqueConstraint("owner_id", "position", name="uq_credit_ledger_entries_position"),
    )

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    kind = Column(String(16), nullable=False, index=True)  # earned, used, expired, refunded
    amount = Column(Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    balance_before = Column(Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    balance_after = Column(Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    related_lot_id = Column(String(36), nullable=True, index=True)
    related_event_ref = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


def _lot_from_row(row: CreditLotRow) -> CreditLot:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return CreditLot(
        id=UUID(row.id),
        owner_id=row.owner_id,
        original_amount=Decimal(row.original_amount),
        remaining_amount=Decimal(row.remaining_amount),
        credit_type=CreditType(row.credit_type),
        description=row.description,
        issued_at=as_utc(row.issued_at),
        expires_at=as_utc(row.expires_at),
        consumed=row.consumed,
        consumed_at=as_utc(row.consumed_at),
        source_event_ref=row.source_event_ref,
        created_by=row.created_by,
        version=row.version,
        sequence=row.sequence,
    )


def _entry_from_row(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=UUID(row.id),
        owner_id=row.owner_id,
        kind=EntryKind(row.kind),
        amount=Decimal(row.amount),
        balance_before=Decimal(row.balance_before),
        balance_after=Decimal(row.balance_after),
        related_lot_id=UUID(row.related_lot_id) if row.related_lot_id else None,
        related_event_ref=row.related_event_ref,
        description=row.description,
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
        position=row.position,
        sequence=row.sequence,
    )


def _is_contention(error: OperationalError) -> bool:
    sqlstate = getattr(error.orig, "pgcode", None) or getattr(error.orig, "sqlstate", None)
    return sqlstate in CONTENTION_SQLSTATES or "database is locked" in str(error.orig)


class SqlAlchemyStorage(LedgerRepository):
    """Ledger repository backed by a relational database.

    One SQLAlchemy session per ``transaction()`` block, tracked per thread so
    nested repository calls join the enclosing transaction. Writers of one
    owner queue on that owner's ``credit_owners`` row; lot decrements are
    additionally guarded by ``UPDATE ... WHERE version = :expected`` and ledger
    entries by a unique ``(owner_id, position)``. Lock timeouts, deadlocks and
    serialization failures surface as WriteConflictError so callers retry.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._local = threading.local()
        self._provisioned = False

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        self._provisioned = True

    def ensure_provisioned(self) -> None:
        if self._provisioned:
            return
        inspector = inspect(self.engine)
        missing = sorted(name for name in Base.metadata.tables if not inspector.has_table(name))
        if missing:
            logger.error("Credit ledger storage is not provisioned, missing tables: %s", ", ".join(missing))
            raise LedgerNotProvisionedError(f"Credit ledger tables missing: {', '.join(missing)}")
        self._provisioned = True

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return

        self.ensure_provisioned()
        session = self.session_factory()
        self._local.session = session
        try:
            with session.begin():
                yield
        except OperationalError as e:
            if not _is_contention(e):
                raise
            logger.warning("Credit ledger write contention: %s", e.orig)
            raise WriteConflictError(None, str(e.orig)) from e
        finally:
            self._local.session = None
            session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self.transaction():
            yield self._local.session

    def lock_owner(self, owner_id: str) -> None:
        with self._session() as session:
            result = session.execute(
                update(CreditOwnerRow)
                .where(CreditOwnerRow.owner_id == owner_id)
                .values(write_count=CreditOwnerRow.write_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
            session.add(CreditOwnerRow(owner_id=owner_id, write_count=1))
            try:
                session.flush()
            except IntegrityError as e:
                raise WriteConflictError(owner_id, "owner row created concurrently") from e

    def add_lot(self, lot: CreditLot) -> CreditLot:
        with self._session() as session:
            row = CreditLotRow(
                id=str(lot.id),
                owner_id=lot.owner_id,
                original_amount=lot.original_amount,
                remaining_amount=lot.remaining_amount,
                credit_type=lot.credit_type.value,
                description=lot.description,
                issued_at=lot.issued_at,
                expires_at=lot.expires_at,
                consumed=lot.consumed,
                consumed_at=lot.consumed_at,
                source_event_ref=lot.source_event_ref,
                created_by=lot.created_by,
                version=lot.version,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateIssuanceError(lot.owner_id, lot.source_event_ref, lot.credit_type) from e
            return lot.model_copy(update={"sequence": row.sequence})

    def get_lot(self, lot_id: UUID) -> CreditLot:
        with self._session() as session:
            row = session.execute(
                select(CreditLotRow).where(CreditLotRow.id == str(lot_id))
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Credit lot {lot_id} not found")
            return _lot_from_row(row)

    def find_lot_by_source(
        self, owner_id: str, source_event_ref: str, credit_type: CreditType
    ) -> Optional[CreditLot]:
        with self._session() as session:
            row = session.execute(
                select(CreditLotRow).where(
                    CreditLotRow.owner_id == owner_id,
                    CreditLotRow.source_event_ref == source_event_ref,
                    CreditLotRow.credit_type == credit_type.value,
                )
            ).scalar_one_or_none()
            return _lot_from_row(row) if row else None

    def list_lots(self, owner_id: str) -> list[CreditLot]:
        with self._session() as session:
            rows = session.execute(
                select(CreditLotRow)
                .where(CreditLotRow.owner_id == owner_id)
                .order_by(CreditLotRow.issued_at.asc(), CreditLotRow.sequence.asc())
                .execution_options(populate_existing=True)
            ).scalars()
            return [_lot_from_row(row) for row in rows]

    def list_owner_ids(self) -> list[str]:
        with self._session() as session:
            return list(session.execute(
                select(CreditLotRow.owner_id).distinct().order_by(CreditLotRow.owner_id)
            ).scalars())

    def list_owners_with_expired_lots(self, as_of: datetime) -> list[str]:
        swept = exists().where(
            LedgerEntryRow.related_lot_id == CreditLotRow.id,
            LedgerEntryRow.kind == EntryKind.EXPIRED.value,
        )
        with self._session() as session:
            return list(session.execute(
                select(CreditLotRow.owner_id)
                .where(
                    CreditLotRow.consumed.is_(False),
                    CreditLotRow.expires_at.is_not(None),
                    CreditLotRow.expires_at <= as_of,
                    ~swept,
                )
                .distinct()
                .order_by(CreditLotRow.owner_id)
            ).scalars())

    def compare_and_decrement(
        self, lot_id: UUID, amount: Decimal, expected_version: int, now: datetime
    ) -> CreditLot:
        with self._session() as session:
            row = session.execute(
                select(CreditLotRow)
                .where(CreditLotRow.id == str(lot_id))
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Credit lot {lot_id} not found")
            if row.version != expected_version:
                raise ConcurrentModificationError(lot_id, expected_version, row.version)
            if amount > row.remaining_amount:
                raise ConsistencyViolationError(
                    f"Decrement of {amount} exceeds remaining {row.remaining_amount} on lot {lot_id}"
                )

            new_remaining = row.remaining_amount - amount
            values = {"remaining_amount": new_remaining, "version": expected_version + 1}
            if new_remaining == 0:
                values.update(consumed=True, consumed_at=now)

            result = session.execute(
                update(CreditLotRow)
                .where(CreditLotRow.id == str(lot_id), CreditLotRow.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentModificationError(lot_id, expected_version)

            session.refresh(row)
            return _lot_from_row(row)

    def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._session() as session:
            row = LedgerEntryRow(
                id=str(entry.id),
                owner_id=entry.owner_id,
                position=entry.position,
                kind=entry.kind.value,
                amount=entry.amount,
                balance_before=entry.balance_before,
                balance_after=entry.balance_after,
                related_lot_id=str(entry.related_lot_id) if entry.related_lot_id else None,
                related_event_ref=entry.related_event_ref,
                description=entry.description,
                created_by=entry.created_by,
                created_at=entry.created_at,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as e:
                raise WriteConflictError(entry.owner_id, f"ledger position {entry.position} already taken") from e
            return entry.model_copy(update={"sequence": row.sequence})

    def list_entries(self, owner_id: str) -> list[LedgerEntry]:
        with self._session() as session:
            rows = session.execute(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.owner_id == owner_id)
                .order_by(LedgerEntryRow.position.asc())
            ).scalars()
            return [_entry_from_row(row) for row in rows]

    def latest_entry(self, owner_id: str) -> Optional[LedgerEntry]:
        with self._session() as session:
            row = session.execute(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.owner_id == owner_id)
                .order_by(LedgerEntryRow.position.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _entry_from_row(row) if row else None

    def has_entry_for_lot(self, lot_id: UUID, kind: EntryKind) -> bool:
        with self._session() as session:
            return session.execute(
                select(
                    exists().where(
                        LedgerEntryRow.related_lot_id == str(lot_id),
                        LedgerEntryRow.kind == kind.value,
                    )
                )
            ).scalar()
