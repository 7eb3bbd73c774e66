"""
Income Matcher.

Matches each closed lifecycle to the ledger's independently reported
REALIZED_PNL income for the same symbol.

Matching passes:
1. trade id: income whose ``trade_id`` is one of the lifecycle's fill ids
2. time window: income without a trade id, same symbol, timestamp within
   [first_fill_time, last_fill_time + window]

Every income event is consumed by at most one lifecycle. A closed
lifecycle that matches nothing contributes zero and is reported unmatched
(a warning, not an error).
"""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Set

from tradeledger.constants import MATCH_WINDOW_MINUTES
from tradeledger.domain.models import IncomeEvent, IncomeType, TradeLifecycle
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class IncomeMatch:
    matched_income_pnl: Decimal = ZERO
    matched_by_lifecycle: Dict[str, Decimal] = field(default_factory=dict)
    matched_event_ids: Set[str] = field(default_factory=set)
    unmatched_lifecycle_ids: List[str] = field(default_factory=list)


class IncomeMatcher:
    """
    Args:
        window: Grace period after the last fill for ledger income to land
    """

    def __init__(self, window: timedelta = timedelta(minutes=MATCH_WINDOW_MINUTES)):
        self.window = window

    def match(self, lifecycles: Iterable[TradeLifecycle], ledger_income_events: Iterable[IncomeEvent]) -> IncomeMatch:
        closed = sorted(
            (lc for lc in lifecycles if lc.is_closed),
            key=lambda lc: (lc.first_fill_time, lc.lifecycle_id),
        )
        events = sorted(
            (e for e in ledger_income_events if e.income_type is IncomeType.REALIZED_PNL),
            key=lambda e: e.sort_key,
        )

        outcome = IncomeMatch()
        consumed: Set[str] = set()
        per_lifecycle: Dict[str, List[IncomeEvent]] = {lc.lifecycle_id: [] for lc in closed}

        owner_by_fill: Dict[str, str] = {}
        for lifecycle in closed:
            for fill_id in lifecycle.fill_ids:
                # A flip fill belongs to two lifecycles; the closing one owns its realized P&L
                owner_by_fill.setdefault(fill_id, lifecycle.lifecycle_id)

        for event in events:
            if event.trade_id is None:
                continue
            owner = owner_by_fill.get(event.trade_id)
            if owner is not None:
                per_lifecycle[owner].append(event)
                consumed.add(event.external_id)

        for lifecycle in closed:
            window_end = lifecycle.last_fill_time + self.window
            for event in events:
                if event.timestamp > window_end:
                    break
                if event.external_id in consumed or event.trade_id is not None:
                    continue
                if event.symbol != lifecycle.symbol or event.timestamp < lifecycle.first_fill_time:
                    continue
                per_lifecycle[lifecycle.lifecycle_id].append(event)
                consumed.add(event.external_id)

        for lifecycle in closed:
            matched = per_lifecycle[lifecycle.lifecycle_id]
            if not matched:
                outcome.unmatched_lifecycle_ids.append(lifecycle.lifecycle_id)
                continue
            amount = sum((e.amount for e in matched), ZERO)
            outcome.matched_by_lifecycle[lifecycle.lifecycle_id] = amount
            outcome.matched_income_pnl += amount

        outcome.matched_event_ids = consumed
        if outcome.unmatched_lifecycle_ids:
            logger.warning(
                "Closed lifecycles without matching ledger income",
                count=len(outcome.unmatched_lifecycle_ids),
            )
        return outcome


def match(
    lifecycles: Iterable[TradeLifecycle],
    ledger_income_events: Iterable[IncomeEvent],
    window: timedelta = timedelta(minutes=MATCH_WINDOW_MINUTES),
) -> Decimal:
    """Sum of ledger realized P&L matched to closed lifecycles."""
    return IncomeMatcher(window).match(lifecycles, ledger_income_events).matched_income_pnl
