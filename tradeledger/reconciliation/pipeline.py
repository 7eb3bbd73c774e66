"""
Trade reconciliation pipeline.

fetch -> normalize -> aggregate -> attribute funding -> match -> validate
-> reconcile -> persist

Everything up to ``reconcile`` is computed in memory. Persistence happens
once at the end, under the account lock, in a single transaction: a run
that fails or is cancelled before that point leaves the store untouched.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tradeledger.config.config import RunParameters
from tradeledger.domain.models import IncomeEvent, IncomeType, TradeLifecycle
from tradeledger.domain.protocols import ExecutionFeed
from tradeledger.ingest.feed import fetch_all_records
from tradeledger.ingest.normalizer import ExecutionNormalizer, NormalizedBatch
from tradeledger.lifecycle.aggregator import LifecycleAggregator, RejectedExecution, attribute_funding
from tradeledger.lifecycle.validator import ValidationSummary, validate_all
from tradeledger.monitoring.logger import bind_run_context, clear_run_context, get_logger
from tradeledger.reconciliation.balance import ledger_entries_from_income
from tradeledger.reconciliation.comparator import Reconciliation, reconcile
from tradeledger.reconciliation.income_matcher import IncomeMatch, IncomeMatcher
from tradeledger.storage.gateway import PersistenceGateway

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class ReconciliationStats:
    valid_trades: int = 0
    invalid_trades: int = 0
    warning_trades: int = 0
    total_lifecycles: int = 0
    complete_lifecycles: int = 0
    incomplete_lifecycles: int = 0
    rejected_executions: int = 0
    dropped_records: int = 0
    duplicate_records: int = 0
    unmatched_lifecycles: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "validTrades": self.valid_trades,
            "invalidTrades": self.invalid_trades,
            "warningTrades": self.warning_trades,
            "totalLifecycles": self.total_lifecycles,
            "completeLifecycles": self.complete_lifecycles,
            "incompleteLifecycles": self.incomplete_lifecycles,
            "rejectedExecutions": self.rejected_executions,
            "droppedRecords": self.dropped_records,
            "duplicateRecords": self.duplicate_records,
            "unmatchedLifecycles": self.unmatched_lifecycles,
        }


@dataclass
class ReconciliationResult:
    """Per-run report. Not persisted as a row; exported as ``to_dict()``."""
    stats: ReconciliationStats
    reconciliation: Reconciliation
    trades: List[TradeLifecycle]
    lifecycles: List[TradeLifecycle] = field(default_factory=list)
    income_events: List[IncomeEvent] = field(default_factory=list)
    income_match: Optional[IncomeMatch] = None
    validation: Optional[ValidationSummary] = None
    rejected: List[RejectedExecution] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    persisted_lifecycles: int = 0
    persisted_ledger_entries: int = 0

    def to_dict(self, currency_places: Optional[int] = None) -> Dict[str, Any]:
        kwargs = {} if currency_places is None else {"currency_places": currency_places}
        return {
            "stats": self.stats.to_dict(),
            "reconciliation": self.reconciliation.to_dict(**kwargs),
            "trades": [t.to_dict(**kwargs) for t in self.trades],
        }


def build_reconciliation_result(batch: NormalizedBatch, params: Optional[RunParameters] = None) -> ReconciliationResult:
    """
    Pure in-memory core of a trade reconciliation run.

    Args:
        batch: Normalized executions and income events
        params: Effective run parameters

    Returns:
        ReconciliationResult; ``trades`` holds the closed lifecycles
    """
    params = params or RunParameters()

    outcome = LifecycleAggregator(max_workers=params.aggregation_workers).aggregate(batch.executions)
    lifecycles = outcome.lifecycles
    attribute_funding(lifecycles, batch.income_events)

    income_match = IncomeMatcher(params.match_window).match(lifecycles, batch.income_events)
    validation = validate_all(lifecycles, income_match.matched_by_lifecycle)

    aggregated_total = sum((lc.realized_pnl for lc in lifecycles), ZERO)
    ledger_total = sum(
        (e.amount for e in batch.income_events if e.income_type is IncomeType.REALIZED_PNL),
        ZERO,
    )
    reconciliation = reconcile(
        aggregated_total,
        income_match.matched_income_pnl,
        ledger_total,
        tolerance_pct=params.tolerance_pct,
    )

    trades = [lc for lc in lifecycles if lc.is_closed]
    complete = sum(1 for lc in lifecycles if lc.is_complete)
    stats = ReconciliationStats(
        valid_trades=validation.valid,
        invalid_trades=validation.invalid,
        warning_trades=validation.with_warnings,
        total_lifecycles=len(lifecycles),
        complete_lifecycles=complete,
        incomplete_lifecycles=len(lifecycles) - complete,
        rejected_executions=len(outcome.rejected),
        dropped_records=batch.dropped,
        duplicate_records=batch.duplicates,
        unmatched_lifecycles=len(income_match.unmatched_lifecycle_ids),
    )

    return ReconciliationResult(
        stats=stats,
        reconciliation=reconciliation,
        trades=trades,
        lifecycles=lifecycles,
        income_events=batch.income_events,
        income_match=income_match,
        validation=validation,
        rejected=outcome.rejected,
        errors=list(batch.errors),
    )


class TradeReconciliationService:
    """
    Runs the trade pipeline for one account against an upstream feed.

    Args:
        gateway: Persistence Gateway; None computes the report without persisting
        params: Effective run parameters
    """

    def __init__(self, gateway: Optional[PersistenceGateway] = None, params: Optional[RunParameters] = None):
        self.gateway = gateway
        self.params = params or RunParameters()
        self.normalizer = ExecutionNormalizer()

    async def run(self, account_id: str, feed: ExecutionFeed) -> ReconciliationResult:
        """
        Raises:
            UpstreamTimeoutError: feed exceeded the timeout or page cap; nothing persisted
            PersistenceConflictError: another run holds the account lock; nothing persisted
        """
        run_id = uuid.uuid4().hex[:12]
        bind_run_context(run_id=run_id, account_id=account_id)
        try:
            logger.info(
                "TRADE_RECON_START",
                timeout_seconds=self.params.fetch_timeout_seconds,
                max_pages=self.params.max_pages,
                tolerance_pct=str(self.params.tolerance_pct),
            )
            raw = await fetch_all_records(
                feed,
                timeout_seconds=self.params.fetch_timeout_seconds,
                max_pages=self.params.max_pages,
            )
            batch = self.normalizer.normalize_batch(raw)
            result = await asyncio.to_thread(build_reconciliation_result, batch, self.params)

            if self.gateway is not None:
                await asyncio.to_thread(self._persist, account_id, run_id, result)

            recon = result.reconciliation
            log = logger.info if recon.is_reconciled else logger.warning
            log(
                "TRADE_RECON_SUMMARY",
                is_reconciled=recon.is_reconciled,
                aggregated_total_pnl=str(recon.aggregated_total_pnl),
                ledger_total_pnl=str(recon.ledger_total_pnl),
                difference_percent=str(recon.difference_percent),
                **result.stats.to_dict(),
                persisted_lifecycles=result.persisted_lifecycles,
            )
            return result
        finally:
            clear_run_context()

    def _persist(self, account_id: str, run_id: str, result: ReconciliationResult) -> None:
        entries = ledger_entries_from_income(account_id, result.income_events)
        with self.gateway.account_lock([account_id], owner=run_id):
            with self.gateway.transaction() as tx:
                result.persisted_lifecycles = tx.append_lifecycles(account_id, result.trades)
                result.persisted_ledger_entries = tx.record_ledger_entries(entries)
