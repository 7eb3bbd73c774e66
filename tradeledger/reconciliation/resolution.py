"""
Discrepancy Resolution Workflow.

State machine per discrepancy record:

    unresolved ──auto (|d| <= threshold, auto_fix on)──► resolved/auto   (balance set to expected)
    unresolved ──manual + apply_fix──────────────────► resolved/manual (balance set to expected)
    unresolved ──manual──────────────────────────────► resolved/manual (no balance change)
    unresolved ──ignored─────────────────────────────► resolved/ignored (no balance change)

Resolved is terminal. A balance correction and the resolve write always
commit together.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from tradeledger.config.config import RunParameters
from tradeledger.domain.models import BalanceSnapshot, DiscrepancyRecord, ResolutionMethod, quantize
from tradeledger.exceptions import ValidationError
from tradeledger.monitoring.logger import bind_run_context, clear_run_context, get_logger
from tradeledger.reconciliation.balance import BalanceDiscrepancyDetector, ledger_delta
from tradeledger.storage.gateway import PersistenceGateway
from tradeledger.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


@dataclass
class BalanceReconciliationReport:
    accounts_checked: int = 0
    discrepancies_found: int = 0
    auto_fixed: int = 0
    requires_review: int = 0
    superseded: int = 0
    discrepancies: List[DiscrepancyRecord] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountsChecked": self.accounts_checked,
            "discrepanciesFound": self.discrepancies_found,
            "autoFixed": self.auto_fixed,
            "requiresReview": self.requires_review,
            "superseded": self.superseded,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _AccountCheck:
    account_id: str
    current: BalanceSnapshot
    detection: Optional[DiscrepancyRecord]
    stale: List[DiscrepancyRecord]


def _parse_method(method) -> ResolutionMethod:
    if isinstance(method, ResolutionMethod):
        return method
    try:
        return ResolutionMethod(str(method).lower())
    except ValueError:
        raise ValidationError(f"Unknown resolution method: {method}")


class DiscrepancyResolutionWorkflow:
    """
    Detects balance discrepancies for every account and drives them to resolution.

    Args:
        gateway: Persistence Gateway (the only writer)
        params: Effective run parameters
        max_retries: Attempts for a failed balance correction before surfacing it
        retry_delay: Initial backoff between attempts, in seconds
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        params: Optional[RunParameters] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        self.gateway = gateway
        self.params = params or RunParameters()
        self.detector = BalanceDiscrepancyDetector(self.params.min_discrepancy_abs)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    # ------------------------------------------------------------------
    # Scheduled reconciliation
    # ------------------------------------------------------------------

    def run_reconciliation(
        self,
        auto_fix: bool = False,
        auto_fix_threshold: Optional[Decimal] = None,
        account_id: Optional[str] = None,
    ) -> BalanceReconciliationReport:
        """
        Check every account with a stored snapshot (or just ``account_id``).

        Detection runs first for all accounts; every write of the run then
        commits in one transaction while all account locks are held.

        Raises:
            PersistenceConflictError: another run holds an account's lock
        """
        threshold = self.params.auto_fix_threshold if auto_fix_threshold is None else Decimal(str(auto_fix_threshold))
        account_ids = [account_id] if account_id else self.gateway.list_account_ids()
        run_id = uuid.uuid4().hex[:12]
        bind_run_context(run_id=run_id)
        report = BalanceReconciliationReport()

        logger.info(
            "BALANCE_RECON_START",
            accounts=len(account_ids),
            auto_fix=auto_fix,
            auto_fix_threshold=str(threshold),
        )
        try:
            with self.gateway.account_lock(account_ids, owner=run_id):
                checks = [c for c in (self._check_account(a) for a in account_ids) if c is not None]
                report.accounts_checked = len(checks)
                with self.gateway.transaction() as tx:
                    for check in checks:
                        self._apply_check(tx, check, auto_fix, threshold, report)
        finally:
            clear_run_context()

        report.requires_review = report.discrepancies_found - report.auto_fixed
        logger.info(
            "BALANCE_RECON_SUMMARY",
            run_id=run_id,
            accounts_checked=report.accounts_checked,
            discrepancies_found=report.discrepancies_found,
            auto_fixed=report.auto_fixed,
            requires_review=report.requires_review,
            superseded=report.superseded,
        )
        return report

    def _check_account(self, account_id: str) -> Optional[_AccountCheck]:
        snapshots = self.gateway.latest_snapshots(account_id, limit=2)
        if not snapshots:
            logger.warning("No balance snapshot for account, skipping", account_id=account_id)
            return None

        current = snapshots[0]
        prior = snapshots[1] if len(snapshots) > 1 else None
        entries = self.gateway.ledger_entries_between(
            account_id,
            after=prior.captured_at if prior else None,
            until=current.captured_at,
        )
        detection = self.detector.detect(
            account_id,
            stored_balance=current.balance,
            ledger_delta=ledger_delta(entries),
            prior_snapshot_balance=prior.balance if prior else Decimal("0"),
            snapshot_date=current.date,
        )
        stale = self.gateway.list_discrepancies(account_id=account_id, resolved=False)
        return _AccountCheck(account_id=account_id, current=current, detection=detection, stale=stale)

    def _apply_check(self, tx, check: _AccountCheck, auto_fix: bool, threshold: Decimal, report) -> None:
        kept_id = None
        record = check.detection
        if record is not None:
            kept_id = self._record_detection(tx, check.account_id, record, auto_fix, threshold, report)

        if not auto_fix:
            return
        for old in check.stale:
            if old.id == kept_id or abs(old.discrepancy) > threshold:
                continue
            tx.mark_resolved(
                old.id,
                ResolutionMethod.AUTO,
                f"Superseded by reconciliation of snapshot {check.current.date.isoformat()}",
            )
            report.superseded += 1

    def _record_detection(self, tx, account_id: str, record: DiscrepancyRecord, auto_fix: bool, threshold: Decimal, report) -> str:
        gap = abs(record.discrepancy)
        fixable = auto_fix and gap <= threshold
        if not fixable:
            record.resolution_notes = (
                f"Discrepancy exceeds auto-fix threshold ({threshold})"
                if gap > threshold else "Auto-fix not enabled"
            )
        stored = tx.insert_discrepancy(record)
        if stored.resolved:
            # Same condition already acknowledged as ignored
            logger.debug("Discrepancy previously ignored", account_id=account_id, discrepancy_id=stored.id)
            return stored.id

        if fixable:
            tx.upsert_balance_snapshot(account_id, stored.snapshot_date, {"balance": stored.expected_balance})
            stored = tx.mark_resolved(
                stored.id,
                ResolutionMethod.AUTO,
                f"Auto-fixed discrepancy of {quantize(stored.discrepancy)} (below threshold of {threshold})",
            )
            report.auto_fixed += 1
            logger.info(
                "DISCREPANCY_AUTO_FIXED",
                account_id=account_id,
                discrepancy_id=stored.id,
                discrepancy=str(stored.discrepancy),
            )
        report.discrepancies_found += 1
        report.discrepancies.append(stored)
        return stored.id

    # ------------------------------------------------------------------
    # Operator resolution
    # ------------------------------------------------------------------

    def resolve_discrepancy(
        self,
        discrepancy_id: str,
        method,
        notes: Optional[str] = None,
        apply_fix: bool = False,
    ) -> DiscrepancyRecord:
        """
        Resolve one discrepancy on operator request.

        Raises:
            ValidationError: unknown id, method ``auto``, or ``ignored`` with apply_fix
            DiscrepancyAlreadyResolvedError: the record is already resolved
            DiscrepancyApplyError: the balance correction kept failing after retries
        """
        method, account_id = self._validate_request(discrepancy_id, method, apply_fix)

        @retry_on_transient_errors(max_retries=self.max_retries, base_delay=self.retry_delay)
        def _resolve() -> DiscrepancyRecord:
            with self.gateway.account_lock([account_id]):
                return self.gateway.resolve_discrepancy(discrepancy_id, method, notes=notes, apply_fix=apply_fix)

        return _resolve()

    def _validate_request(self, discrepancy_id: str, method, apply_fix: bool) -> Tuple[ResolutionMethod, str]:
        method = _parse_method(method)
        if method is ResolutionMethod.AUTO:
            raise ValidationError("Method 'auto' is reserved for scheduled reconciliation runs")
        if method is ResolutionMethod.IGNORED and apply_fix:
            raise ValidationError("An ignored discrepancy cannot apply a balance fix")
        record = self.gateway.get_discrepancy(discrepancy_id)
        if record is None:
            raise ValidationError(f"Unknown discrepancy: {discrepancy_id}")
        return method, record.account_id
