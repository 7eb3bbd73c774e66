"""
Domain models for the reconciliation engine.

These are the canonical records every component operates on; raw exchange
payloads never travel past the normalizer.
All timestamps use UTC timezone-aware datetimes.
All money, price and quantity values are Decimal.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, Dict, Any

from tradeledger.constants import (
    BREAKEVEN_EPSILON,
    CURRENCY_PRECISION,
    PRICE_PRECISION,
    QUANTITY_PRECISION,
)


class Side(str, Enum):
    """Execution side."""
    BUY = "BUY"
    SELL = "SELL"


class PositionSide(str, Enum):
    """Exchange position side (BOTH = one-way mode)."""
    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"


class Direction(str, Enum):
    """Lifecycle direction."""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @classmethod
    def for_side(cls, side: Side) -> "Direction":
        return cls.LONG if side is Side.BUY else cls.SHORT


class LifecycleState(str, Enum):
    """
    Lifecycle states.

    State Machine:
        OPEN → PARTIALLY_CLOSED (closing fill, quantity remains)
        OPEN → CLOSED (closing fill consumes all quantity)
        PARTIALLY_CLOSED → CLOSED

    Terminal: CLOSED
    """
    OPEN = "open"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"


class TradeResult(str, Enum):
    WIN = "win"
    LOSS = "loss"
    BREAKEVEN = "breakeven"


class IncomeType(str, Enum):
    """Income record types reported by the exchange ledger."""
    REALIZED_PNL = "REALIZED_PNL"
    COMMISSION = "COMMISSION"
    FUNDING_FEE = "FUNDING_FEE"
    TRANSFER = "TRANSFER"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str) -> "IncomeType":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.OTHER


class LedgerEntryType(str, Enum):
    """Account ledger entry types that move the balance."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    REALIZED_PNL = "realized_pnl"
    FUNDING_FEE = "funding_fee"
    COMMISSION = "commission"
    INCOME = "income"
    EXPENSE = "expense"


# Entry types whose amount is always a credit / always a debit.
# The rest (realized_pnl, funding_fee) carry their own sign.
CREDIT_ENTRY_TYPES = frozenset({LedgerEntryType.DEPOSIT, LedgerEntryType.TRANSFER_IN, LedgerEntryType.INCOME})
DEBIT_ENTRY_TYPES = frozenset({
    LedgerEntryType.WITHDRAWAL,
    LedgerEntryType.TRANSFER_OUT,
    LedgerEntryType.EXPENSE,
    LedgerEntryType.COMMISSION,
})


class SnapshotSource(str, Enum):
    EXCHANGE = "exchange"
    MANUAL = "manual"
    PAPER = "paper"


class ResolutionMethod(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    IGNORED = "ignored"


def quantize(value: Optional[Decimal], places: int = CURRENCY_PRECISION) -> Optional[Decimal]:
    """Round to reporting precision. Only used when producing reports."""
    if value is None:
        return None
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def lifecycle_key(symbol: str, first_fill_external_id: str) -> str:
    """Deterministic lifecycle id: sha256 of (symbol, first opening fill id)."""
    payload = f"{symbol}|{first_fill_external_id}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class Execution:
    """
    A single exchange fill after normalization. Never mutated.

    Positivity of price/quantity is enforced by the aggregator, not here:
    the normalizer passes such rows through so the aggregator can mark the
    affected lifecycle incomplete.
    """
    external_id: str
    symbol: str
    side: Side
    price: Decimal
    quantity: Decimal
    fee: Decimal
    fee_asset: str
    timestamp: datetime
    order_id: str
    position_side: PositionSide = PositionSide.BOTH
    is_maker: Optional[bool] = None

    def __post_init__(self):
        if self.timestamp.tzinfo is None:
            raise ValueError("Execution timestamp must be timezone-aware (UTC)")

    @property
    def sort_key(self) -> tuple:
        return (self.timestamp, self.external_id)


@dataclass(frozen=True)
class IncomeEvent:
    """An exchange ledger income record (realized P&L, commission, funding...)."""
    external_id: str
    symbol: str
    income_type: IncomeType
    amount: Decimal
    asset: str
    timestamp: datetime
    trade_id: Optional[str] = None
    info: str = ""

    def __post_init__(self):
        if self.timestamp.tzinfo is None:
            raise ValueError("IncomeEvent timestamp must be timezone-aware (UTC)")

    @property
    def sort_key(self) -> tuple:
        return (self.timestamp, self.external_id)


@dataclass
class TradeLifecycle:
    """
    One continuous net-position episode in a symbol.

    ``quantity`` is the remaining open quantity; it only decreases once
    closing fills arrive. A CLOSED lifecycle is terminated and never
    mutated again by the aggregator.
    """
    lifecycle_id: str
    symbol: str
    direction: Direction
    entry_price: Decimal
    quantity: Decimal
    first_fill_time: datetime
    last_fill_time: datetime
    opened_quantity: Decimal = Decimal("0")
    closed_quantity: Decimal = Decimal("0")
    exit_price: Optional[Decimal] = None
    realized_pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    funding_fees: Decimal = Decimal("0")
    state: LifecycleState = LifecycleState.OPEN
    incomplete: bool = False
    entry_fill_ids: List[str] = field(default_factory=list)
    exit_fill_ids: List[str] = field(default_factory=list)

    @property
    def first_fill_external_id(self) -> str:
        return self.entry_fill_ids[0]

    @property
    def is_closed(self) -> bool:
        return self.state is LifecycleState.CLOSED

    @property
    def is_complete(self) -> bool:
        """Closed with no skipped executions in its stream."""
        return self.is_closed and not self.incomplete

    @property
    def fill_ids(self) -> List[str]:
        return self.entry_fill_ids + self.exit_fill_ids

    @property
    def hold_time_minutes(self) -> Decimal:
        seconds = Decimal(str((self.last_fill_time - self.first_fill_time).total_seconds()))
        return seconds / Decimal("60")

    @property
    def result(self) -> Optional[TradeResult]:
        if not self.is_closed:
            return None
        if self.realized_pnl > BREAKEVEN_EPSILON:
            return TradeResult.WIN
        if self.realized_pnl < -BREAKEVEN_EPSILON:
            return TradeResult.LOSS
        return TradeResult.BREAKEVEN

    def to_dict(self, currency_places: int = CURRENCY_PRECISION) -> Dict[str, Any]:
        """Report shape consumed by the export collaborator."""
        result = self.result
        return {
            "lifecycleId": self.lifecycle_id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "entryPrice": quantize(self.entry_price, PRICE_PRECISION),
            "exitPrice": quantize(self.exit_price, PRICE_PRECISION),
            "quantity": quantize(self.quantity, QUANTITY_PRECISION),
            "openedQuantity": quantize(self.opened_quantity, QUANTITY_PRECISION),
            "realizedPnl": quantize(self.realized_pnl, currency_places),
            "fees": quantize(self.fees, currency_places),
            "fundingFees": quantize(self.funding_fees, currency_places),
            "holdTimeMinutes": quantize(self.hold_time_minutes, 2),
            "result": result.value if result else None,
            "state": self.state.value,
            "incomplete": self.incomplete,
            "firstFillTime": self.first_fill_time.isoformat(),
            "lastFillTime": self.last_fill_time.isoformat(),
        }


@dataclass(frozen=True)
class LedgerEntry:
    """An account ledger event that moves the balance."""
    external_id: str
    account_id: str
    entry_type: LedgerEntryType
    amount: Decimal
    occurred_at: datetime

    def __post_init__(self):
        if self.occurred_at.tzinfo is None:
            raise ValueError("LedgerEntry occurred_at must be timezone-aware (UTC)")

    @property
    def signed_amount(self) -> Decimal:
        if self.entry_type in CREDIT_ENTRY_TYPES:
            return abs(self.amount)
        if self.entry_type in DEBIT_ENTRY_TYPES:
            return -abs(self.amount)
        return self.amount


@dataclass
class BalanceSnapshot:
    """One balance capture per (account_id, date); later same-day captures overwrite."""
    account_id: str
    date: date
    balance: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    realized_pnl_today: Decimal = Decimal("0")
    source: SnapshotSource = SnapshotSource.MANUAL
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DiscrepancyRecord:
    """
    A detected gap between a stored balance and the ledger-implied balance.

    ``resolved`` is a one-way transition. Records are never deleted.
    """
    id: str
    account_id: str
    snapshot_date: date
    expected_balance: Decimal
    actual_balance: Decimal
    detected_at: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution_method: Optional[ResolutionMethod] = None
    resolution_notes: Optional[str] = None

    @property
    def discrepancy(self) -> Decimal:
        return self.actual_balance - self.expected_balance

    def to_dict(self, currency_places: int = CURRENCY_PRECISION) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "snapshotDate": self.snapshot_date.isoformat(),
            "expectedBalance": quantize(self.expected_balance, currency_places),
            "actualBalance": quantize(self.actual_balance, currency_places),
            "discrepancy": quantize(self.discrepancy, currency_places),
            "detectedAt": self.detected_at.isoformat(),
            "resolved": self.resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolutionMethod": self.resolution_method.value if self.resolution_method else None,
            "resolutionNotes": self.resolution_notes,
        }
