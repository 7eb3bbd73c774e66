"""
Lifecycle Aggregator.

Rebuilds position lifecycles from normalized executions:

- executions are grouped into independent streams (one per symbol, or per
  symbol+position side for hedge-mode fills)
- each stream is scanned strictly in (timestamp, external_id) order
- a same-direction fill opens/extends the current lifecycle and moves the
  weighted-average entry price
- an opposite fill closes against the open quantity; the closed portion
  realizes (fill_price - entry_price) * closed_qty * sign(direction)
- an opposite fill larger than the open quantity closes the lifecycle and
  opens a new one in the opposite direction with the excess (the only flip rule)

Streams never interact, so they are aggregated in a thread pool (one task
per stream). Within a stream the scan is an order-dependent state machine
and is never split.

All arithmetic is Decimal; nothing is rounded here.
"""
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from tradeledger.domain.models import (
    Direction,
    Execution,
    IncomeEvent,
    IncomeType,
    LifecycleState,
    PositionSide,
    TradeLifecycle,
    lifecycle_key,
)
from tradeledger.exceptions import InvalidExecutionError
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class RejectedExecution:
    external_id: str
    symbol: str
    reason: str


@dataclass
class AggregationOutcome:
    lifecycles: List[TradeLifecycle] = field(default_factory=list)
    rejected: List[RejectedExecution] = field(default_factory=list)


def validate_execution(execution: Execution) -> None:
    """
    Raises:
        InvalidExecutionError: zero/negative quantity or price, or negative fee
    """
    if execution.quantity <= ZERO:
        raise InvalidExecutionError(
            f"Non-positive quantity {execution.quantity} on {execution.symbol}",
            external_id=execution.external_id,
        )
    if execution.price <= ZERO:
        raise InvalidExecutionError(
            f"Non-positive price {execution.price} on {execution.symbol}",
            external_id=execution.external_id,
        )
    if execution.fee < ZERO:
        raise InvalidExecutionError(
            f"Negative fee {execution.fee} on {execution.symbol}",
            external_id=execution.external_id,
        )


def stream_key(execution: Execution) -> Tuple[str, str]:
    """One-way fills share a stream per symbol; hedge-mode legs are separate streams."""
    return (execution.symbol, execution.position_side.value)


class SymbolStreamAggregator:
    """Sequential state machine over one stream's executions."""

    def __init__(self, symbol: str, position_side: PositionSide = PositionSide.BOTH):
        self.symbol = symbol
        self.position_side = position_side
        self.current: Optional[TradeLifecycle] = None
        self.finished: List[TradeLifecycle] = []
        self.rejected: List[RejectedExecution] = []
        self._pending_gap = False

    def run(self, executions: Iterable[Execution]) -> List[TradeLifecycle]:
        for execution in sorted(executions, key=lambda x: x.sort_key):
            try:
                validate_execution(execution)
            except InvalidExecutionError as e:
                self._reject(execution, e)
                continue
            self._apply(execution)

        lifecycles = list(self.finished)
        if self.current is not None:
            lifecycles.append(self.current)
        return lifecycles

    def _reject(self, execution: Execution, error: InvalidExecutionError) -> None:
        self.rejected.append(RejectedExecution(execution.external_id, execution.symbol, str(error)))
        if self.current is not None:
            self.current.incomplete = True
        else:
            # Nothing open: the gap belongs to whatever opens next
            self._pending_gap = True
        logger.warning(
            "Skipped invalid execution",
            symbol=execution.symbol,
            external_id=execution.external_id,
            error=str(error),
        )

    def _apply(self, execution: Execution) -> None:
        fill_direction = Direction.for_side(execution.side)
        current = self.current

        if current is None:
            self._open(execution, execution.quantity, execution.fee)
            return

        if fill_direction is current.direction:
            self._extend(current, execution)
            return

        close_qty = min(execution.quantity, current.quantity)
        excess_qty = execution.quantity - close_qty
        if excess_qty > ZERO:
            close_fee = execution.fee * close_qty / execution.quantity
        else:
            close_fee = execution.fee
        self._close(current, execution, close_qty, close_fee)

        if excess_qty > ZERO:
            self._open(execution, excess_qty, execution.fee - close_fee)

    def _open(self, execution: Execution, quantity: Decimal, fee: Decimal) -> None:
        lifecycle = TradeLifecycle(
            lifecycle_id=lifecycle_key(execution.symbol, execution.external_id),
            symbol=execution.symbol,
            direction=Direction.for_side(execution.side),
            entry_price=execution.price,
            quantity=quantity,
            opened_quantity=quantity,
            fees=fee,
            first_fill_time=execution.timestamp,
            last_fill_time=execution.timestamp,
            incomplete=self._pending_gap,
            entry_fill_ids=[execution.external_id],
        )
        self._pending_gap = False
        self.current = lifecycle

    def _extend(self, lifecycle: TradeLifecycle, execution: Execution) -> None:
        open_qty = lifecycle.quantity
        new_qty = open_qty + execution.quantity
        lifecycle.entry_price = (lifecycle.entry_price * open_qty + execution.price * execution.quantity) / new_qty
        lifecycle.quantity = new_qty
        lifecycle.opened_quantity += execution.quantity
        lifecycle.fees += execution.fee
        lifecycle.last_fill_time = execution.timestamp
        lifecycle.entry_fill_ids.append(execution.external_id)

    def _close(self, lifecycle: TradeLifecycle, execution: Execution, close_qty: Decimal, fee: Decimal) -> None:
        sign = Decimal(lifecycle.direction.sign)
        lifecycle.realized_pnl += (execution.price - lifecycle.entry_price) * close_qty * sign

        prior_closed = lifecycle.closed_quantity
        if lifecycle.exit_price is None:
            lifecycle.exit_price = execution.price
        else:
            lifecycle.exit_price = (
                (lifecycle.exit_price * prior_closed + execution.price * close_qty) / (prior_closed + close_qty)
            )
        lifecycle.closed_quantity = prior_closed + close_qty
        lifecycle.quantity -= close_qty
        lifecycle.fees += fee
        lifecycle.last_fill_time = execution.timestamp
        lifecycle.exit_fill_ids.append(execution.external_id)

        if lifecycle.quantity == ZERO:
            lifecycle.state = LifecycleState.CLOSED
            self.finished.append(lifecycle)
            self.current = None
            logger.debug(
                "LIFECYCLE_CLOSED",
                symbol=lifecycle.symbol,
                lifecycle_id=lifecycle.lifecycle_id,
                realized_pnl=str(lifecycle.realized_pnl),
            )
        else:
            lifecycle.state = LifecycleState.PARTIALLY_CLOSED


class LifecycleAggregator:
    """
    Aggregates executions into lifecycles across all streams.

    Args:
        max_workers: Thread pool size for per-stream aggregation (1 = inline)
    """

    def __init__(self, max_workers: int = 4):
        self.max_workers = max(1, int(max_workers))

    def aggregate(self, executions: Iterable[Execution]) -> AggregationOutcome:
        streams: Dict[Tuple[str, str], List[Execution]] = defaultdict(list)
        for execution in executions:
            streams[stream_key(execution)].append(execution)

        keys = sorted(streams)
        if self.max_workers == 1 or len(keys) <= 1:
            results = [self._run_stream(key, streams[key]) for key in keys]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(keys)), thread_name_prefix="aggregate") as pool:
                results = list(pool.map(lambda k: self._run_stream(k, streams[k]), keys))

        outcome = AggregationOutcome()
        for lifecycles, rejected in results:
            outcome.lifecycles.extend(lifecycles)
            outcome.rejected.extend(rejected)

        outcome.lifecycles.sort(key=lambda lc: (lc.symbol, lc.first_fill_time, lc.lifecycle_id))
        outcome.rejected.sort(key=lambda r: (r.symbol, r.external_id))

        logger.info(
            "AGGREGATE_SUMMARY",
            streams=len(keys),
            lifecycles=len(outcome.lifecycles),
            closed=sum(1 for lc in outcome.lifecycles if lc.is_closed),
            rejected=len(outcome.rejected),
        )
        return outcome

    @staticmethod
    def _run_stream(key: Tuple[str, str], executions: List[Execution]):
        symbol, position_side = key
        stream = SymbolStreamAggregator(symbol, PositionSide(position_side))
        lifecycles = stream.run(executions)
        return lifecycles, stream.rejected


def aggregate(executions: Iterable[Execution], max_workers: int = 4) -> List[TradeLifecycle]:
    """Aggregate executions into lifecycles ordered by (symbol, first fill time)."""
    return LifecycleAggregator(max_workers=max_workers).aggregate(executions).lifecycles


def attribute_funding(
    lifecycles: List[TradeLifecycle],
    income_events: Iterable[IncomeEvent],
) -> List[IncomeEvent]:
    """
    Attribute FUNDING_FEE income to the lifecycle open at the funding timestamp.

    A closed lifecycle is open over [first_fill_time, last_fill_time]; a
    still-open lifecycle from first_fill_time onwards. When several lifecycles
    of the symbol are open (hedge mode) the earliest opened one takes it.

    Returns:
        Funding events with no open lifecycle (carried by a flat position)
    """
    by_symbol: Dict[str, List[TradeLifecycle]] = defaultdict(list)
    for lifecycle in lifecycles:
        by_symbol[lifecycle.symbol].append(lifecycle)
    for candidates in by_symbol.values():
        candidates.sort(key=lambda lc: (lc.first_fill_time, lc.lifecycle_id))

    unattributed: List[IncomeEvent] = []
    for event in sorted(income_events, key=lambda e: e.sort_key):
        if event.income_type is not IncomeType.FUNDING_FEE:
            continue
        owner = None
        for lifecycle in by_symbol.get(event.symbol, []):
            if lifecycle.first_fill_time > event.timestamp:
                break
            if not lifecycle.is_closed or event.timestamp <= lifecycle.last_fill_time:
                owner = lifecycle
                break
        if owner is None:
            unattributed.append(event)
            continue
        owner.funding_fees += event.amount

    if unattributed:
        logger.info("Funding events without an open lifecycle", count=len(unattributed))
    return unattributed
