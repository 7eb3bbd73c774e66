"""
Unit tests for the Reconciliation Comparator: formula, tolerance boundary, zero ledger.
"""
from decimal import Decimal

import pytest

from tradeledger.reconciliation.comparator import reconcile


def test_identical_totals_reconcile():
    result = reconcile(Decimal("123.45"), Decimal("123.45"), Decimal("123.45"))
    assert result.difference == Decimal("0")
    assert result.difference_percent == Decimal("0")
    assert result.is_reconciled


def test_difference_is_aggregated_minus_ledger():
    result = reconcile(Decimal("90"), Decimal("90"), Decimal("100"))
    assert result.difference == Decimal("-10")
    assert result.difference_percent == Decimal("-10")
    assert not result.is_reconciled


def test_exactly_at_tolerance_is_reconciled():
    # 1.00% off with a 1% tolerance: the bound is inclusive
    result = reconcile(Decimal("495"), Decimal("495"), Decimal("500"))
    assert result.difference_percent == Decimal("-1")
    assert result.is_reconciled


def test_just_past_tolerance_is_not_reconciled():
    result = reconcile(Decimal("494.99"), Decimal("494.99"), Decimal("500"))
    assert not result.is_reconciled


def test_tolerance_is_configurable():
    assert reconcile(Decimal("490"), Decimal("490"), Decimal("500"), tolerance_pct=Decimal("2")).is_reconciled
    assert not reconcile(Decimal("490"), Decimal("490"), Decimal("500"), tolerance_pct=Decimal("1.5")).is_reconciled


def test_zero_ledger_uses_epsilon_denominator():
    result = reconcile(Decimal("0"), Decimal("0"), Decimal("0"))
    assert result.is_reconciled

    nonzero = reconcile(Decimal("5"), Decimal("0"), Decimal("0"))
    assert not nonzero.is_reconciled
    assert nonzero.difference_percent > Decimal("1000")


def test_negative_ledger_total_uses_absolute_denominator():
    result = reconcile(Decimal("-101"), Decimal("-101"), Decimal("-100"))
    assert result.difference_percent == Decimal("-1")
    assert result.is_reconciled


def test_float_inputs_are_taken_at_printed_value():
    result = reconcile(0.1 + 0.2, 0.3, 0.3)
    assert result.aggregated_total_pnl == Decimal("0.30000000000000004")


def test_unmatched_income_and_note():
    result = reconcile(Decimal("100"), Decimal("80"), Decimal("95.5"))
    assert result.unmatched_income_pnl == Decimal("15.5")
    assert result.incomplete_positions_note.startswith("+15.50 P&L from open/incomplete positions")


def test_no_note_when_everything_matched():
    assert reconcile(Decimal("10"), Decimal("10"), Decimal("10")).incomplete_positions_note == ""


def test_to_dict_keys_and_rounding():
    data = reconcile(Decimal("100.005"), Decimal("100"), Decimal("100")).to_dict()
    assert set(data) >= {
        "aggregatedTotalPnl", "matchedIncomePnl", "ledgerTotalPnl",
        "difference", "differencePercent", "isReconciled",
    }
    assert data["aggregatedTotalPnl"] == Decimal("100.01")
    assert data["differencePercent"] == Decimal("0.0050")


@pytest.mark.parametrize("aggregated, ledger", [("1000", "1009"), ("-50", "-50.4"), ("0.02", "0.02")])
def test_reconciled_iff_within_tolerance(aggregated, ledger):
    aggregated, ledger = Decimal(aggregated), Decimal(ledger)
    result = reconcile(aggregated, aggregated, ledger)
    expected = abs(aggregated - ledger) / abs(ledger) * 100 <= 1
    assert result.is_reconciled is expected
