"""
Reconciliation module.

ARCHITECTURE:
    TradeReconciliationService (fetch -> normalize -> aggregate -> reconcile)
        │
        ├── IncomeMatcher (ledger income per closed lifecycle)
        └── reconcile() (aggregated vs ledger total, tolerance)

    DiscrepancyResolutionWorkflow (scheduled + operator resolution)
        │
        └── BalanceDiscrepancyDetector (stored vs ledger-implied balance)

All writes go through storage.gateway.PersistenceGateway.
"""
from tradeledger.reconciliation.balance import (
    BalanceDiscrepancyDetector,
    ledger_delta,
    ledger_entries_from_income,
)
from tradeledger.reconciliation.comparator import Reconciliation, reconcile
from tradeledger.reconciliation.income_matcher import IncomeMatch, IncomeMatcher
from tradeledger.reconciliation.pipeline import (
    ReconciliationResult,
    ReconciliationStats,
    TradeReconciliationService,
    build_reconciliation_result,
)
from tradeledger.reconciliation.resolution import (
    BalanceReconciliationReport,
    DiscrepancyResolutionWorkflow,
)

__all__ = [
    # Trade reconciliation
    "Reconciliation",
    "reconcile",
    "IncomeMatch",
    "IncomeMatcher",
    "ReconciliationResult",
    "ReconciliationStats",
    "TradeReconciliationService",
    "build_reconciliation_result",
    # Balance reconciliation
    "BalanceDiscrepancyDetector",
    "ledger_delta",
    "ledger_entries_from_income",
    "BalanceReconciliationReport",
    "DiscrepancyResolutionWorkflow",
]
