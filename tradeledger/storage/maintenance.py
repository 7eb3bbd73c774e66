"""
Database maintenance service.

Retention policies:
  - idempotency_keys: 90 days (configurable); keys still pointing at an
    unresolved discrepancy are kept
  - run_locks: expired rows are removed
  - balance_discrepancies / trade_lifecycles / ledger_entries: kept indefinitely
"""
from datetime import timedelta
from typing import Dict

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from tradeledger.constants import IDEMPOTENCY_KEY_RETENTION_DAYS
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.db import Database, get_pool_status
from tradeledger.storage.repository import (
    BalanceSnapshotModel,
    DiscrepancyModel,
    IdempotencyKeyModel,
    LedgerEntryModel,
    RunLockModel,
    TradeLifecycleModel,
    utcnow,
)

logger = get_logger(__name__)


class DatabasePruner:
    """Service for cleaning up bookkeeping tables."""

    def __init__(self, db: Database):
        self.db = db

    def prune_idempotency_keys(self, retention_days: int = IDEMPOTENCY_KEY_RETENTION_DAYS) -> int:
        """
        Delete idempotency keys older than *retention_days* days.

        A key whose discrepancy is still unresolved is kept regardless of age,
        otherwise a rerun would record the same discrepancy twice.
        """
        cutoff = utcnow() - timedelta(days=retention_days)
        open_refs = select(DiscrepancyModel.id).where(DiscrepancyModel.resolved.is_(False))

        try:
            with self.db.get_session() as session:
                result = session.execute(
                    delete(IdempotencyKeyModel)
                    .where(
                        and_(
                            IdempotencyKeyModel.created_at < cutoff,
                            or_(
                                IdempotencyKeyModel.ref_id.is_(None),
                                IdempotencyKeyModel.ref_id.not_in(open_refs),
                            ),
                        )
                    )
                    .execution_options(synchronize_session=False)
                )
                count = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error("Failed to prune idempotency keys", error=str(e))
            raise

        logger.info("Pruned idempotency keys", count=count, cutoff=cutoff.isoformat())
        return count

    def prune_expired_locks(self) -> int:
        with self.db.get_session() as session:
            result = session.execute(delete(RunLockModel).where(RunLockModel.expires_at < utcnow()))
            count = result.rowcount or 0
        if count:
            logger.info("Pruned expired run locks", count=count)
        return count

    def log_table_stats(self) -> Dict[str, int]:
        """Row counts per table, logged as DB_TABLE_STATS."""
        stats: Dict[str, int] = {}
        with self.db.get_session() as session:
            for model, name in [
                (BalanceSnapshotModel, "balance_snapshots"),
                (LedgerEntryModel, "ledger_entries"),
                (DiscrepancyModel, "balance_discrepancies"),
                (TradeLifecycleModel, "trade_lifecycles"),
                (IdempotencyKeyModel, "idempotency_keys"),
            ]:
                stats[name] = session.execute(select(func.count()).select_from(model)).scalar() or 0
        logger.info("DB_TABLE_STATS", **stats)
        return stats

    def run_maintenance(self, retention_days: int = IDEMPOTENCY_KEY_RETENTION_DAYS) -> dict:
        """Run all maintenance tasks and log table stats."""
        logger.info("Starting database maintenance...")
        keys_deleted = self.prune_idempotency_keys(retention_days)
        locks_deleted = self.prune_expired_locks()
        self.log_table_stats()
        pool = get_pool_status(self.db)
        if pool:
            logger.info("DB_POOL_STATUS", **pool)
        return {
            "keys_deleted": keys_deleted,
            "locks_deleted": locks_deleted,
            "pool": pool,
        }
