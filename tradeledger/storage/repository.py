"""
ORM models and row mapping for the reconciliation store.

Tables:
  - balance_snapshots:   one row per (account_id, snapshot_date), upserted
  - ledger_entries:      balance-moving ledger events, keyed by external id
  - balance_discrepancies: audit log of detected discrepancies, never deleted
  - trade_lifecycles:    closed lifecycles, append-only, keyed by lifecycle hash
  - idempotency_keys:    persisted dedup keys (bounded by DatabasePruner)
  - run_locks:           per-account single-writer lock rows with expiry
"""
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Session

from tradeledger.domain.models import (
    BalanceSnapshot,
    DiscrepancyRecord,
    LedgerEntry,
    LedgerEntryType,
    ResolutionMethod,
    SnapshotSource,
    TradeLifecycle,
)
from tradeledger.storage.db import Base

_MONEY = Numeric(precision=28, scale=8)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; every stored datetime is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ORM Models
class BalanceSnapshotModel(Base):
    """Daily balance capture. Same-day captures overwrite (last writer wins)."""
    __tablename__ = "balance_snapshots"
    __table_args__ = (
        UniqueConstraint("account_id", "snapshot_date", name="uq_snapshot_account_date"),
        Index("idx_snapshot_account_date", "account_id", "snapshot_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    snapshot_date = Column(Date, nullable=False)
    balance = Column(_MONEY, nullable=False)
    unrealized_pnl = Column(_MONEY, nullable=False, default=Decimal("0"))
    realized_pnl_today = Column(_MONEY, nullable=False, default=Decimal("0"))
    source = Column(String, nullable=False, default=SnapshotSource.MANUAL.value)
    captured_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class LedgerEntryModel(Base):
    """Ledger events that move an account's balance."""
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("idx_ledger_account_time", "account_id", "occurred_at"),
    )

    external_id = Column(String, primary_key=True)
    account_id = Column(String, nullable=False)
    entry_type = Column(String, nullable=False)
    amount = Column(_MONEY, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)


class DiscrepancyModel(Base):
    """Balance discrepancy audit log. Rows are resolved once and never deleted."""
    __tablename__ = "balance_discrepancies"
    __table_args__ = (
        Index("idx_discrepancy_account_resolved", "account_id", "resolved"),
        Index("idx_discrepancy_detected", "detected_at"),
    )

    id = Column(String, primary_key=True)
    account_id = Column(String, nullable=False)
    snapshot_date = Column(Date, nullable=False)
    expected_balance = Column(_MONEY, nullable=False)
    actual_balance = Column(_MONEY, nullable=False)
    discrepancy = Column(_MONEY, nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_method = Column(String, nullable=True)
    resolution_notes = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)


class TradeLifecycleModel(Base):
    """Closed lifecycles. Append-only; re-runs hit the primary key and are ignored."""
    __tablename__ = "trade_lifecycles"
    __table_args__ = (
        Index("idx_lifecycle_account_symbol", "account_id", "symbol", "first_fill_time"),
    )

    lifecycle_id = Column(String, primary_key=True)
    account_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    first_fill_external_id = Column(String, nullable=False)
    entry_price = Column(_MONEY, nullable=False)
    exit_price = Column(_MONEY, nullable=False)
    quantity = Column(_MONEY, nullable=False)
    realized_pnl = Column(_MONEY, nullable=False)
    fees = Column(_MONEY, nullable=False)
    funding_fees = Column(_MONEY, nullable=False)
    first_fill_time = Column(DateTime(timezone=True), nullable=False)
    last_fill_time = Column(DateTime(timezone=True), nullable=False)
    hold_time_minutes = Column(Numeric(precision=20, scale=4), nullable=False)
    result = Column(String, nullable=False)
    incomplete = Column(Boolean, nullable=False, default=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class IdempotencyKeyModel(Base):
    """Persisted dedup keys so reruns across process restarts stay idempotent."""
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        Index("idx_idempotency_created", "created_at"),
    )

    key = Column(String, primary_key=True)
    scope = Column(String, nullable=False)
    ref_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RunLockModel(Base):
    """Single-writer lock per account. Expired rows may be taken over."""
    __tablename__ = "run_locks"

    account_id = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# Row mapping
def snapshot_from_row(row: BalanceSnapshotModel) -> BalanceSnapshot:
    return BalanceSnapshot(
        account_id=row.account_id,
        date=row.snapshot_date,
        balance=_dec(row.balance),
        unrealized_pnl=_dec(row.unrealized_pnl),
        realized_pnl_today=_dec(row.realized_pnl_today),
        source=SnapshotSource(row.source),
        captured_at=as_utc(row.captured_at),
    )


def discrepancy_from_row(row: DiscrepancyModel) -> DiscrepancyRecord:
    return DiscrepancyRecord(
        id=row.id,
        account_id=row.account_id,
        snapshot_date=row.snapshot_date,
        expected_balance=_dec(row.expected_balance),
        actual_balance=_dec(row.actual_balance),
        detected_at=as_utc(row.detected_at),
        resolved=bool(row.resolved),
        resolved_at=as_utc(row.resolved_at),
        resolution_method=ResolutionMethod(row.resolution_method) if row.resolution_method else None,
        resolution_notes=row.resolution_notes,
    )


def discrepancy_to_row(record: DiscrepancyRecord, idempotency_key: Optional[str] = None) -> DiscrepancyModel:
    return DiscrepancyModel(
        id=record.id,
        account_id=record.account_id,
        snapshot_date=record.snapshot_date,
        expected_balance=record.expected_balance,
        actual_balance=record.actual_balance,
        discrepancy=record.discrepancy,
        detected_at=record.detected_at,
        resolved=record.resolved,
        resolved_at=record.resolved_at,
        resolution_method=record.resolution_method.value if record.resolution_method else None,
        resolution_notes=record.resolution_notes,
        idempotency_key=idempotency_key,
    )


def ledger_entry_from_row(row: LedgerEntryModel) -> LedgerEntry:
    return LedgerEntry(
        external_id=row.external_id,
        account_id=row.account_id,
        entry_type=LedgerEntryType(row.entry_type),
        amount=_dec(row.amount),
        occurred_at=as_utc(row.occurred_at),
    )


def lifecycle_row_values(account_id: str, lifecycle: TradeLifecycle) -> dict:
    result = lifecycle.result
    return {
        "lifecycle_id": lifecycle.lifecycle_id,
        "account_id": account_id,
        "symbol": lifecycle.symbol,
        "direction": lifecycle.direction.value,
        "first_fill_external_id": lifecycle.first_fill_external_id,
        "entry_price": lifecycle.entry_price,
        "exit_price": lifecycle.exit_price,
        "quantity": lifecycle.opened_quantity,
        "realized_pnl": lifecycle.realized_pnl,
        "fees": lifecycle.fees,
        "funding_fees": lifecycle.funding_fees,
        "first_fill_time": lifecycle.first_fill_time,
        "last_fill_time": lifecycle.last_fill_time,
        "hold_time_minutes": lifecycle.hold_time_minutes,
        "result": result.value if result else "breakeven",
        "incomplete": lifecycle.incomplete,
        "recorded_at": utcnow(),
    }


def dialect_insert(session: Session, model):
    """INSERT construct with ON CONFLICT support for the session's dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise ValueError(f"Upsert not supported on dialect {name}")
    return insert(model)


def snapshot_date_today() -> date:
    return utcnow().date()
