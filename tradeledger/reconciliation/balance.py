"""
Balance Discrepancy Detector.

expected = prior snapshot balance + ledger delta since that snapshot
discrepancy = stored - expected

A record is produced only when |discrepancy| > min_discrepancy_abs. The
detector is pure: persisting, fixing and resolving belong to the
resolution workflow.
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from tradeledger.constants import MIN_DISCREPANCY_ABS
from tradeledger.domain.models import (
    DiscrepancyRecord,
    IncomeEvent,
    IncomeType,
    LedgerEntry,
    LedgerEntryType,
)
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")

_INCOME_ENTRY_TYPES = {
    IncomeType.REALIZED_PNL: LedgerEntryType.REALIZED_PNL,
    IncomeType.FUNDING_FEE: LedgerEntryType.FUNDING_FEE,
    IncomeType.COMMISSION: LedgerEntryType.COMMISSION,
}


def ledger_delta(entries: Iterable[LedgerEntry]) -> Decimal:
    """Net balance movement of the entries (credits positive, debits negative)."""
    return sum((e.signed_amount for e in entries), ZERO)


def ledger_entries_from_income(account_id: str, income_events: Iterable[IncomeEvent]) -> List[LedgerEntry]:
    """
    Map exchange income records onto balance-moving ledger entries.

    Transfers become transfer_in/transfer_out by sign. OTHER records do not
    move the trading balance and are skipped.
    """
    entries: List[LedgerEntry] = []
    for event in income_events:
        if event.income_type is IncomeType.TRANSFER:
            entry_type = LedgerEntryType.TRANSFER_IN if event.amount >= 0 else LedgerEntryType.TRANSFER_OUT
        else:
            entry_type = _INCOME_ENTRY_TYPES.get(event.income_type)
            if entry_type is None:
                continue
        entries.append(LedgerEntry(
            external_id=f"income:{event.external_id}",
            account_id=account_id,
            entry_type=entry_type,
            amount=event.amount,
            occurred_at=event.timestamp,
        ))
    return entries


class BalanceDiscrepancyDetector:
    """
    Compares a stored balance with the balance implied by the ledger.

    Args:
        min_discrepancy_abs: Gaps at or below this are rounding noise
    """

    def __init__(self, min_discrepancy_abs: Decimal = MIN_DISCREPANCY_ABS):
        self.min_discrepancy_abs = min_discrepancy_abs

    def detect(
        self,
        account_id: str,
        stored_balance: Decimal,
        ledger_delta: Decimal,
        prior_snapshot_balance: Decimal = ZERO,
        snapshot_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DiscrepancyRecord]:
        now = now or datetime.now(timezone.utc)
        expected = prior_snapshot_balance + ledger_delta
        gap = stored_balance - expected

        if abs(gap) <= self.min_discrepancy_abs:
            return None

        record = DiscrepancyRecord(
            id=str(uuid.uuid4()),
            account_id=account_id,
            snapshot_date=snapshot_date or now.date(),
            expected_balance=expected,
            actual_balance=stored_balance,
            detected_at=now,
        )
        logger.info(
            "BALANCE_DISCREPANCY_DETECTED",
            account_id=account_id,
            expected=str(expected),
            actual=str(stored_balance),
            discrepancy=str(gap),
        )
        return record


def detect(
    account_id: str,
    stored_balance: Decimal,
    ledger_delta: Decimal,
    prior_snapshot_balance: Decimal = ZERO,
    min_discrepancy_abs: Decimal = MIN_DISCREPANCY_ABS,
) -> Optional[DiscrepancyRecord]:
    return BalanceDiscrepancyDetector(min_discrepancy_abs).detect(
        account_id, stored_balance, ledger_delta, prior_snapshot_balance
    )
