"""
Reconciliation Comparator.

Pure comparison of the aggregated realized P&L against the ledger. It never
touches stored data; its output is a report for the operator or an alerting
collaborator.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from tradeledger.constants import CURRENCY_PRECISION, RECONCILE_EPSILON, RECONCILE_TOLERANCE_PCT
from tradeledger.domain.models import quantize

HUNDRED = Decimal("100")


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class Reconciliation:
    aggregated_total_pnl: Decimal
    matched_income_pnl: Decimal
    ledger_total_pnl: Decimal
    difference: Decimal
    difference_percent: Decimal
    is_reconciled: bool
    tolerance_pct: Decimal

    @property
    def unmatched_income_pnl(self) -> Decimal:
        """Ledger P&L not matched to a closed lifecycle (open positions, out-of-window income)."""
        return self.ledger_total_pnl - self.matched_income_pnl

    @property
    def incomplete_positions_note(self) -> str:
        unmatched = self.unmatched_income_pnl
        if unmatched == 0:
            return ""
        sign = "+" if unmatched >= 0 else ""
        return (
            f"{sign}{quantize(unmatched)} P&L from open/incomplete positions "
            f"not included in aggregated trades."
        )

    def to_dict(self, currency_places: int = CURRENCY_PRECISION) -> Dict[str, Any]:
        return {
            "aggregatedTotalPnl": quantize(self.aggregated_total_pnl, currency_places),
            "matchedIncomePnl": quantize(self.matched_income_pnl, currency_places),
            "ledgerTotalPnl": quantize(self.ledger_total_pnl, currency_places),
            "difference": quantize(self.difference, currency_places),
            "differencePercent": quantize(self.difference_percent, 4),
            "isReconciled": self.is_reconciled,
            "unmatchedIncomePnl": quantize(self.unmatched_income_pnl, currency_places),
            "incompletePositionsNote": self.incomplete_positions_note,
        }


def reconcile(
    aggregated_total: Decimal,
    matched_total: Decimal,
    ledger_total: Decimal,
    tolerance_pct: Decimal = RECONCILE_TOLERANCE_PCT,
    epsilon: Decimal = RECONCILE_EPSILON,
) -> Reconciliation:
    """
    Compare totals.

    difference = aggregated - ledger
    difference_percent = difference / max(|ledger|, epsilon) * 100
    is_reconciled = |difference_percent| <= tolerance_pct
    """
    aggregated_total = _as_decimal(aggregated_total)
    matched_total = _as_decimal(matched_total)
    ledger_total = _as_decimal(ledger_total)
    tolerance_pct = _as_decimal(tolerance_pct)

    difference = aggregated_total - ledger_total
    difference_percent = difference / max(abs(ledger_total), epsilon) * HUNDRED
    return Reconciliation(
        aggregated_total_pnl=aggregated_total,
        matched_income_pnl=matched_total,
        ledger_total_pnl=ledger_total,
        difference=difference,
        difference_percent=difference_percent,
        is_reconciled=abs(difference_percent) <= tolerance_pct,
        tolerance_pct=tolerance_pct,
    )
