"""
Persistence Gateway - the only writer of durable reconciliation state.

Guarantees:
- every write is idempotent: rerunning the same input produces no duplicate rows
  (snapshot upsert on (account_id, date), lifecycle/ledger inserts keyed by
  id and ignored on conflict, discrepancy inserts deduplicated through the
  idempotency key table)
- a run's writes go through one ``transaction()`` so a failure or cancellation
  before commit leaves the store exactly as it was
- writes for an account are serialized by ``account_lock``; a second run for
  the same account fails fast with PersistenceConflictError
- applying a discrepancy fix and marking it resolved commit together or not
  at all
"""
import hashlib
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tradeledger.constants import RUN_LOCK_TTL_SECONDS
from tradeledger.domain.models import (
    BalanceSnapshot,
    DiscrepancyRecord,
    LedgerEntry,
    ResolutionMethod,
    TradeLifecycle,
)
from tradeledger.exceptions import (
    DiscrepancyAlreadyResolvedError,
    DiscrepancyApplyError,
    OperationalError,
    PersistenceConflictError,
    ValidationError,
)
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.db import Database
from tradeledger.storage.repository import (
    BalanceSnapshotModel,
    DiscrepancyModel,
    IdempotencyKeyModel,
    LedgerEntryModel,
    RunLockModel,
    TradeLifecycleModel,
    as_utc,
    dialect_insert,
    discrepancy_from_row,
    discrepancy_to_row,
    ledger_entry_from_row,
    lifecycle_row_values,
    snapshot_from_row,
    utcnow,
)

logger = get_logger(__name__)

_SNAPSHOT_FIELDS = ("balance", "unrealized_pnl", "realized_pnl_today", "source", "captured_at")


def discrepancy_idempotency_key(account_id: str, snapshot_date: date, expected: Decimal, actual: Decimal) -> str:
    """Same account, snapshot and balances -> same key, regardless of Decimal exponent."""
    scale = Decimal("0.00000001")
    payload = "|".join([
        account_id,
        snapshot_date.isoformat(),
        str(expected.quantize(scale)),
        str(actual.quantize(scale)),
    ])
    return "discrepancy:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


class GatewayTransaction:
    """Write operations bound to one session. Obtained from PersistenceGateway.transaction()."""

    def __init__(self, session: Session):
        self.session = session

    def upsert_balance_snapshot(self, account_id: str, snapshot_date: date, fields: Dict[str, Any]) -> None:
        """Insert or overwrite the (account_id, snapshot_date) row. Last writer wins."""
        unknown = set(fields) - set(_SNAPSHOT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown snapshot fields: {sorted(unknown)}")
        values = {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}
        now = utcnow()
        insert_values = {
            "account_id": account_id,
            "snapshot_date": snapshot_date,
            "unrealized_pnl": Decimal("0"),
            "realized_pnl_today": Decimal("0"),
            "source": "manual",
            "captured_at": now,
            **values,
            "updated_at": now,
        }
        if "balance" not in insert_values:
            existing = self.session.execute(
                select(BalanceSnapshotModel.id).where(
                    BalanceSnapshotModel.account_id == account_id,
                    BalanceSnapshotModel.snapshot_date == snapshot_date,
                )
            ).first()
            if existing is None:
                raise ValidationError(f"No snapshot for {account_id} on {snapshot_date} and no balance given")
            self.session.execute(
                update(BalanceSnapshotModel)
                .where(BalanceSnapshotModel.id == existing[0])
                .values(**values, updated_at=now)
            )
            return
        stmt = dialect_insert(self.session, BalanceSnapshotModel).values(**insert_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "snapshot_date"],
            set_={**values, "updated_at": now},
        )
        self.session.execute(stmt)

    def insert_discrepancy(self, record: DiscrepancyRecord) -> DiscrepancyRecord:
        """
        Insert a detected discrepancy once.

        While an unresolved record with the same key exists it is returned
        instead of inserting a duplicate, as is a record resolved as ignored.
        Once it is fixed or resolved manually, the same condition recurring
        creates a new record.
        """
        key = discrepancy_idempotency_key(
            record.account_id, record.snapshot_date, record.expected_balance, record.actual_balance
        )
        key_row = self.session.get(IdempotencyKeyModel, key)
        if key_row is not None and key_row.ref_id:
            existing = self.session.get(DiscrepancyModel, key_row.ref_id)
            ignored = existing is not None and existing.resolution_method == ResolutionMethod.IGNORED.value
            if existing is not None and (not existing.resolved or ignored):
                logger.debug("Discrepancy already recorded", discrepancy_id=existing.id, account_id=record.account_id)
                return discrepancy_from_row(existing)

        self.session.add(discrepancy_to_row(record, idempotency_key=key))
        if key_row is None:
            self.session.add(IdempotencyKeyModel(key=key, scope="discrepancy", ref_id=record.id, created_at=utcnow()))
        else:
            key_row.ref_id = record.id
        self.session.flush()
        return record

    def mark_resolved(
        self,
        discrepancy_id: str,
        method: ResolutionMethod,
        notes: Optional[str],
        resolved_at: Optional[datetime] = None,
    ) -> DiscrepancyRecord:
        """One-way transition unresolved -> resolved."""
        row = self._load_for_update(discrepancy_id)
        if row.resolved:
            raise DiscrepancyAlreadyResolvedError(f"Discrepancy {discrepancy_id} is already resolved")
        row.resolved = True
        row.resolved_at = resolved_at or utcnow()
        row.resolution_method = method.value
        row.resolution_notes = notes
        self.session.flush()
        return discrepancy_from_row(row)

    def append_lifecycles(self, account_id: str, lifecycles: Iterable[TradeLifecycle]) -> int:
        """Insert closed lifecycles; already-recorded ids are ignored. Returns rows inserted."""
        rows = [lifecycle_row_values(account_id, lc) for lc in lifecycles if lc.is_closed]
        if not rows:
            return 0
        stmt = dialect_insert(self.session, TradeLifecycleModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["lifecycle_id"])
        result = self.session.execute(stmt)
        return max(result.rowcount or 0, 0)

    def record_ledger_entries(self, entries: Iterable[LedgerEntry]) -> int:
        rows = [
            {
                "external_id": e.external_id,
                "account_id": e.account_id,
                "entry_type": e.entry_type.value,
                "amount": e.amount,
                "occurred_at": e.occurred_at,
            }
            for e in entries
        ]
        if not rows:
            return 0
        stmt = dialect_insert(self.session, LedgerEntryModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["external_id"])
        result = self.session.execute(stmt)
        return max(result.rowcount or 0, 0)

    def _load_for_update(self, discrepancy_id: str) -> DiscrepancyModel:
        row = self.session.execute(
            select(DiscrepancyModel).where(DiscrepancyModel.id == discrepancy_id).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise ValidationError(f"Unknown discrepancy: {discrepancy_id}")
        return row


class PersistenceGateway:
    """
    Durable store access for reconciliation runs.

    Args:
        db: Database
        lock_ttl_seconds: Age after which a run lock is considered abandoned
    """

    def __init__(self, db: Database, lock_ttl_seconds: int = RUN_LOCK_TTL_SECONDS):
        self.db = db
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Generator[GatewayTransaction, None, None]:
        """All writes inside commit together; any exception rolls all of them back."""
        with self.db.get_session() as session:
            yield GatewayTransaction(session)

    # ------------------------------------------------------------------
    # Single-operation writes
    # ------------------------------------------------------------------

    def upsert_balance_snapshot(self, account_id: str, snapshot_date: date, fields: Dict[str, Any]) -> BalanceSnapshot:
        with self.transaction() as tx:
            tx.upsert_balance_snapshot(account_id, snapshot_date, fields)
        snapshot = self.get_snapshot(account_id, snapshot_date)
        logger.info(
            "SNAPSHOT_UPSERTED",
            account_id=account_id,
            snapshot_date=snapshot_date.isoformat(),
            balance=str(snapshot.balance),
        )
        return snapshot

    def capture_balance_snapshot(self, account_id: str, snapshot_date: date, fields: Dict[str, Any]) -> BalanceSnapshot:
        """
        Record a fresh balance capture.

        Unlike a correction, a capture always moves ``captured_at`` so a
        same-day recapture also moves the end of the ledger window.
        """
        return self.upsert_balance_snapshot(account_id, snapshot_date, {"captured_at": utcnow(), **fields})

    def insert_discrepancy(self, record: DiscrepancyRecord) -> DiscrepancyRecord:
        with self.transaction() as tx:
            return tx.insert_discrepancy(record)

    def record_ledger_entries(self, entries: Iterable[LedgerEntry]) -> int:
        with self.transaction() as tx:
            return tx.record_ledger_entries(entries)

    def append_lifecycles(self, account_id: str, lifecycles: Iterable[TradeLifecycle]) -> int:
        with self.transaction() as tx:
            return tx.append_lifecycles(account_id, lifecycles)

    def resolve_discrepancy(
        self,
        discrepancy_id: str,
        method: ResolutionMethod,
        notes: Optional[str] = None,
        apply_fix: bool = False,
    ) -> DiscrepancyRecord:
        """
        Resolve a discrepancy, optionally correcting the stored balance first.

        The balance write happens-before the resolve write in the same
        transaction, so a record can never be resolved with the fix missing.

        Raises:
            DiscrepancyApplyError: balance correction failed; record left unresolved
            DiscrepancyAlreadyResolvedError: record already resolved
        """
        try:
            with self.transaction() as tx:
                row = tx._load_for_update(discrepancy_id)
                if row.resolved:
                    raise DiscrepancyAlreadyResolvedError(f"Discrepancy {discrepancy_id} is already resolved")
                if apply_fix:
                    try:
                        tx.upsert_balance_snapshot(
                            row.account_id,
                            row.snapshot_date,
                            {"balance": row.expected_balance},
                        )
                        tx.session.flush()
                    except SQLAlchemyError as e:
                        raise DiscrepancyApplyError(
                            f"Balance correction failed for discrepancy {discrepancy_id}: {e}",
                            discrepancy_id=discrepancy_id,
                        ) from e
                resolved = tx.mark_resolved(discrepancy_id, method, notes)
        except SQLAlchemyError as e:
            # Commit failed: both writes rolled back
            if apply_fix:
                raise DiscrepancyApplyError(
                    f"Resolution of {discrepancy_id} was not committed: {e}",
                    discrepancy_id=discrepancy_id,
                ) from e
            raise OperationalError(f"Resolution of {discrepancy_id} was not committed: {e}") from e

        logger.info(
            "DISCREPANCY_RESOLVED",
            discrepancy_id=discrepancy_id,
            account_id=resolved.account_id,
            method=method.value,
            applied_fix=apply_fix,
        )
        return resolved

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshot(self, account_id: str, snapshot_date: date) -> Optional[BalanceSnapshot]:
        with self.db.get_session() as session:
            row = session.execute(
                select(BalanceSnapshotModel).where(
                    BalanceSnapshotModel.account_id == account_id,
                    BalanceSnapshotModel.snapshot_date == snapshot_date,
                )
            ).scalar_one_or_none()
            return snapshot_from_row(row) if row is not None else None

    def latest_snapshots(self, account_id: str, limit: int = 2) -> List[BalanceSnapshot]:
        """Most recent snapshots first."""
        with self.db.get_session() as session:
            rows = session.execute(
                select(BalanceSnapshotModel)
                .where(BalanceSnapshotModel.account_id == account_id)
                .order_by(BalanceSnapshotModel.snapshot_date.desc())
                .limit(limit)
            ).scalars().all()
            return [snapshot_from_row(r) for r in rows]

    def list_account_ids(self) -> List[str]:
        with self.db.get_session() as session:
            rows = session.execute(
                select(BalanceSnapshotModel.account_id).distinct().order_by(BalanceSnapshotModel.account_id)
            ).scalars().all()
            return list(rows)

    def ledger_entries_between(
        self,
        account_id: str,
        after: Optional[datetime],
        until: datetime,
    ) -> List[LedgerEntry]:
        """Ledger entries with after < occurred_at <= until (after=None: from the beginning)."""
        with self.db.get_session() as session:
            query = select(LedgerEntryModel).where(
                LedgerEntryModel.account_id == account_id,
                LedgerEntryModel.occurred_at <= until,
            )
            if after is not None:
                query = query.where(LedgerEntryModel.occurred_at > after)
            rows = session.execute(
                query.order_by(LedgerEntryModel.occurred_at, LedgerEntryModel.external_id)
            ).scalars().all()
            return [ledger_entry_from_row(r) for r in rows]

    def get_discrepancy(self, discrepancy_id: str) -> Optional[DiscrepancyRecord]:
        with self.db.get_session() as session:
            row = session.get(DiscrepancyModel, discrepancy_id)
            return discrepancy_from_row(row) if row is not None else None

    def list_discrepancies(
        self,
        account_id: Optional[str] = None,
        resolved: Optional[bool] = None,
    ) -> List[DiscrepancyRecord]:
        """Newest first."""
        with self.db.get_session() as session:
            query = select(DiscrepancyModel)
            if account_id is not None:
                query = query.where(DiscrepancyModel.account_id == account_id)
            if resolved is not None:
                query = query.where(DiscrepancyModel.resolved == resolved)
            rows = session.execute(
                query.order_by(DiscrepancyModel.detected_at.desc(), DiscrepancyModel.id)
            ).scalars().all()
            return [discrepancy_from_row(r) for r in rows]

    def count_lifecycles(self, account_id: str) -> int:
        with self.db.get_session() as session:
            return session.execute(
                select(func.count()).select_from(TradeLifecycleModel).where(TradeLifecycleModel.account_id == account_id)
            ).scalar_one()

    # ------------------------------------------------------------------
    # Account locks
    # ------------------------------------------------------------------

    @contextmanager
    def account_lock(self, account_ids: Sequence[str], owner: Optional[str] = None) -> Generator[str, None, None]:
        """
        Hold the single-writer lock for every account in ``account_ids``.

        Locks are taken in sorted order and released on exit. A live lock held
        by another owner aborts with PersistenceConflictError before any work.
        """
        owner = owner or uuid.uuid4().hex
        acquired: List[str] = []
        try:
            for account_id in sorted(set(account_ids)):
                self._acquire(account_id, owner)
                acquired.append(account_id)
            yield owner
        finally:
            for account_id in acquired:
                self._release(account_id, owner)

    def _acquire(self, account_id: str, owner: str) -> None:
        now = utcnow()
        expires_at = now + self.lock_ttl
        try:
            with self.db.get_session() as session:
                session.add(RunLockModel(account_id=account_id, owner=owner, acquired_at=now, expires_at=expires_at))
            logger.debug("RUN_LOCK_ACQUIRED", account_id=account_id, owner=owner)
            return
        except IntegrityError:
            pass

        # Lock row exists: take it over only if it has expired
        with self.db.get_session() as session:
            current = session.get(RunLockModel, account_id)
            if current is not None and as_utc(current.expires_at) < now:
                result = session.execute(
                    update(RunLockModel)
                    .where(RunLockModel.account_id == account_id, RunLockModel.owner == current.owner)
                    .values(owner=owner, acquired_at=now, expires_at=expires_at)
                )
                if result.rowcount == 1:
                    logger.warning("RUN_LOCK_TAKEN_OVER", account_id=account_id, previous_owner=current.owner)
                    return
        logger.warning("RUN_LOCK_CONFLICT", account_id=account_id)
        raise PersistenceConflictError(
            f"Another reconciliation run is in progress for account {account_id}",
            account_id=account_id,
        )

    def _release(self, account_id: str, owner: str) -> None:
        try:
            with self.db.get_session() as session:
                session.execute(
                    delete(RunLockModel).where(RunLockModel.account_id == account_id, RunLockModel.owner == owner)
                )
        except SQLAlchemyError as e:
            # Row expires on its own; the next run takes it over
            logger.error("RUN_LOCK_RELEASE_FAILED", account_id=account_id, error=str(e))
