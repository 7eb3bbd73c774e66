"""
Integration tests for balance reconciliation and discrepancy resolution.

Scenario used throughout: a 1000 deposit before day 1's snapshot (1000),
then +200 realized P&L before day 2's snapshot. Day 2's ledger-implied
balance is 1200; each test stores a different day-2 balance.
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from tradeledger.config.config import RunParameters
from tradeledger.domain.models import LedgerEntry, LedgerEntryType, ResolutionMethod
from tradeledger.exceptions import (
    DiscrepancyAlreadyResolvedError,
    DiscrepancyApplyError,
    PersistenceConflictError,
    ValidationError,
)
from tradeledger.reconciliation.resolution import DiscrepancyResolutionWorkflow
from tradeledger.storage.gateway import GatewayTransaction

DAY_1 = date(2026, 3, 1)
DAY_2 = date(2026, 3, 2)
T1 = datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(days=1)


def _seed(gateway, day_2_balance: str, account_id: str = "acc-1") -> None:
    gateway.record_ledger_entries([
        LedgerEntry(f"{account_id}-dep", account_id, LedgerEntryType.DEPOSIT, Decimal("1000"), T1 - timedelta(hours=1)),
        LedgerEntry(f"{account_id}-pnl", account_id, LedgerEntryType.REALIZED_PNL, Decimal("200"), T1 + timedelta(hours=1)),
    ])
    gateway.upsert_balance_snapshot(account_id, DAY_1, {"balance": Decimal("1000"), "captured_at": T1})
    gateway.upsert_balance_snapshot(account_id, DAY_2, {"balance": Decimal(day_2_balance), "captured_at": T2})


@pytest.fixture()
def workflow(gateway):
    return DiscrepancyResolutionWorkflow(gateway, RunParameters(), max_retries=1, retry_delay=0)


class TestScheduledReconciliation:

    def test_consistent_account_has_no_discrepancy(self, gateway, workflow):
        _seed(gateway, "1200")
        report = workflow.run_reconciliation()

        assert report.accounts_checked == 1
        assert report.discrepancies_found == 0
        assert gateway.list_discrepancies() == []

    def test_discrepancy_recorded_for_review(self, gateway, workflow):
        _seed(gateway, "1250")
        report = workflow.run_reconciliation()

        assert report.discrepancies_found == 1
        assert report.requires_review == 1
        assert report.auto_fixed == 0
        record = report.discrepancies[0]
        assert record.expected_balance == Decimal("1200")
        assert record.discrepancy == Decimal("50")
        assert record.snapshot_date == DAY_2
        # Gap of 50 is above the default threshold of 10
        assert record.resolution_notes == "Discrepancy exceeds auto-fix threshold (10)"
        assert not record.resolved

    def test_small_gap_without_auto_fix_is_left_for_review(self, gateway, workflow):
        _seed(gateway, "1205")
        report = workflow.run_reconciliation(auto_fix=False)

        assert report.requires_review == 1
        record = report.discrepancies[0]
        assert record.discrepancy == Decimal("5")
        assert record.resolution_notes == "Auto-fix not enabled"
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1205")

    def test_same_day_recapture_moves_ledger_window(self, gateway, workflow):
        gateway.record_ledger_entries([
            LedgerEntry("dep", "acc-1", LedgerEntryType.DEPOSIT, Decimal("1000"), T1 - timedelta(hours=1)),
        ])
        gateway.capture_balance_snapshot("acc-1", DAY_1, {"balance": Decimal("1000"), "captured_at": T1})
        gateway.capture_balance_snapshot("acc-1", DAY_2, {"balance": Decimal("1000"), "captured_at": T2})
        gateway.record_ledger_entries([
            LedgerEntry("pnl", "acc-1", LedgerEntryType.REALIZED_PNL, Decimal("5"), T2 + timedelta(hours=1)),
        ])
        gateway.capture_balance_snapshot("acc-1", DAY_2, {"balance": Decimal("1005")})

        report = workflow.run_reconciliation(auto_fix=True, auto_fix_threshold=Decimal("10"))

        assert report.discrepancies_found == 0
        assert report.auto_fixed == 0
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1005")

    def test_rerun_does_not_duplicate_records(self, gateway, workflow):
        _seed(gateway, "1250")
        workflow.run_reconciliation()
        workflow.run_reconciliation()

        assert len(gateway.list_discrepancies()) == 1

    def test_auto_fix_within_threshold(self, gateway, workflow):
        _seed(gateway, "1200.50")
        report = workflow.run_reconciliation(auto_fix=True, auto_fix_threshold=Decimal("1"))

        assert report.auto_fixed == 1
        assert report.requires_review == 0
        record = report.discrepancies[0]
        assert record.resolved
        assert record.resolution_method == ResolutionMethod.AUTO
        assert record.resolution_notes.startswith("Auto-fixed discrepancy of 0.50")
        # Fix lands on the snapshot the discrepancy was detected against
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1200")

        assert workflow.run_reconciliation(auto_fix=True).discrepancies_found == 0

    def test_auto_fix_skips_gap_above_threshold(self, gateway, workflow):
        _seed(gateway, "1250")
        report = workflow.run_reconciliation(auto_fix=True, auto_fix_threshold=Decimal("1"))

        assert report.auto_fixed == 0
        assert report.requires_review == 1
        assert report.discrepancies[0].resolution_notes == "Discrepancy exceeds auto-fix threshold (1)"
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1250")

    def test_gap_within_minimum_is_not_recorded(self, gateway, workflow):
        _seed(gateway, "1200.01")
        assert workflow.run_reconciliation().discrepancies_found == 0

    def test_stale_record_superseded_by_correcting_snapshot(self, gateway, workflow):
        _seed(gateway, "1200.50")
        workflow.run_reconciliation()
        gateway.upsert_balance_snapshot("acc-1", DAY_2, {"balance": Decimal("1200")})

        report = workflow.run_reconciliation(auto_fix=True, auto_fix_threshold=Decimal("1"))

        assert report.discrepancies_found == 0
        assert report.superseded == 1
        record = gateway.list_discrepancies()[0]
        assert record.resolution_method == ResolutionMethod.AUTO
        assert record.resolution_notes == "Superseded by reconciliation of snapshot 2026-03-02"

    def test_only_requested_account_checked(self, gateway, workflow):
        _seed(gateway, "1250", account_id="acc-1")
        _seed(gateway, "1250", account_id="acc-2")

        report = workflow.run_reconciliation(account_id="acc-2")

        assert report.accounts_checked == 1
        assert [d.account_id for d in gateway.list_discrepancies()] == ["acc-2"]

    def test_account_without_snapshot_is_skipped(self, workflow):
        assert workflow.run_reconciliation(account_id="ghost").accounts_checked == 0

    def test_locked_account_aborts_without_writes(self, gateway, workflow):
        _seed(gateway, "1250")
        with gateway.account_lock(["acc-1"], owner="other-run"):
            with pytest.raises(PersistenceConflictError):
                workflow.run_reconciliation()
        assert gateway.list_discrepancies() == []

    def test_report_export_shape(self, gateway, workflow):
        _seed(gateway, "1250")
        exported = workflow.run_reconciliation().to_dict()

        assert exported["accountsChecked"] == 1
        assert exported["requiresReview"] == 1
        assert exported["discrepancies"][0]["discrepancy"] == Decimal("50.00")


class TestOperatorResolution:

    @pytest.fixture()
    def discrepancy_id(self, gateway, workflow):
        _seed(gateway, "1250")
        return workflow.run_reconciliation().discrepancies[0].id

    def test_manual_with_fix_corrects_balance(self, gateway, workflow, discrepancy_id):
        resolved = workflow.resolve_discrepancy(discrepancy_id, "manual", notes="exchange confirmed", apply_fix=True)

        assert resolved.resolved
        assert resolved.resolution_method == ResolutionMethod.MANUAL
        assert resolved.resolution_notes == "exchange confirmed"
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1200")
        assert workflow.run_reconciliation().discrepancies_found == 0

    def test_manual_without_fix_keeps_balance(self, gateway, workflow, discrepancy_id):
        workflow.resolve_discrepancy(discrepancy_id, ResolutionMethod.MANUAL)

        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1250")
        assert gateway.get_discrepancy(discrepancy_id).resolved

    def test_ignored_is_not_raised_again(self, gateway, workflow, discrepancy_id):
        workflow.resolve_discrepancy(discrepancy_id, "ignored", notes="known exchange rounding")

        report = workflow.run_reconciliation()

        assert report.discrepancies_found == 0
        assert len(gateway.list_discrepancies()) == 1
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1250")

    def test_resolving_twice_fails(self, workflow, discrepancy_id):
        workflow.resolve_discrepancy(discrepancy_id, "manual")
        with pytest.raises(DiscrepancyAlreadyResolvedError):
            workflow.resolve_discrepancy(discrepancy_id, "manual")

    @pytest.mark.parametrize("method, apply_fix", [
        ("auto", False),
        ("ignored", True),
        ("escalate", False),
    ])
    def test_invalid_requests_rejected(self, gateway, workflow, discrepancy_id, method, apply_fix):
        with pytest.raises(ValidationError):
            workflow.resolve_discrepancy(discrepancy_id, method, apply_fix=apply_fix)
        assert not gateway.get_discrepancy(discrepancy_id).resolved

    def test_unknown_id_rejected(self, workflow):
        with pytest.raises(ValidationError):
            workflow.resolve_discrepancy("no-such-id", "manual")

    def test_failed_fix_leaves_record_unresolved(self, gateway, workflow, discrepancy_id, monkeypatch):
        def _broken_write(self, account_id, snapshot_date, fields):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(GatewayTransaction, "upsert_balance_snapshot", _broken_write)

        with pytest.raises(DiscrepancyApplyError) as exc_info:
            workflow.resolve_discrepancy(discrepancy_id, "manual", apply_fix=True)

        assert exc_info.value.discrepancy_id == discrepancy_id
        assert not gateway.get_discrepancy(discrepancy_id).resolved
        assert gateway.get_snapshot("acc-1", DAY_2).balance == Decimal("1250")

    def test_resolution_blocked_while_account_locked(self, gateway, workflow, discrepancy_id):
        with gateway.account_lock(["acc-1"], owner="scheduled-run"):
            with pytest.raises(PersistenceConflictError):
                workflow.resolve_discrepancy(discrepancy_id, "manual")
        assert not gateway.get_discrepancy(discrepancy_id).resolved
