"""
Execution Normalizer.

Converts loosely-typed fill and income payloads from the exchange feed into
canonical Execution / IncomeEvent records. This is the only module that
knows about raw payload shapes; everything downstream sees canonical types.

Accepted shapes:
- exchange camelCase fills: id, symbol, side, price, qty, commission,
  commissionAsset, time, orderId, positionSide, maker
- exchange camelCase income: symbol, incomeType, income, asset, time,
  tranId, tradeId, info
- canonical snake_case equivalents (external_id, quantity, fee, timestamp...)

A record is income when it carries ``incomeType``/``income_type`` or an
explicit ``kind: "income"``; otherwise it is a fill.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from tradeledger.domain.models import (
    Execution,
    IncomeEvent,
    IncomeType,
    PositionSide,
    Side,
)
from tradeledger.exceptions import MalformedRecordError
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)

# Epoch values above this are milliseconds (year 2286 in seconds)
_MS_EPOCH_THRESHOLD = 10_000_000_000

_FILL_REQUIRED = ("symbol", "price", "quantity")


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _to_bool(value: Any) -> Optional[bool]:
    """Maker flags arrive as booleans, 0/1 or "true"/"false" strings; anything else is unknown."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in ("true", "1"):
        return True
    if text in ("false", "0"):
        return False
    return None


def _to_decimal(value: Any, field_name: str, raw: Dict[str, Any]) -> Decimal:
    try:
        # str() first so floats keep their printed value, not their binary expansion
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise MalformedRecordError(f"Unparseable {field_name}: {value!r}", record=raw)
    if not parsed.is_finite():
        raise MalformedRecordError(f"Non-finite {field_name}: {value!r}", record=raw)
    return parsed


def parse_timestamp(value: Any) -> datetime:
    """Parse epoch milliseconds, epoch seconds, ISO-8601 strings or datetimes into UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float, Decimal)) or (isinstance(value, str) and value.strip().lstrip("-").isdigit()):
        epoch = Decimal(str(value))
        if abs(epoch) >= _MS_EPOCH_THRESHOLD:
            epoch = epoch / Decimal(1000)
        return datetime.fromtimestamp(float(epoch), tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError(f"Unsupported timestamp: {value!r}")


def is_income_record(raw: Dict[str, Any]) -> bool:
    kind = raw.get("kind")
    if kind is not None:
        return str(kind).lower() == "income"
    return "incomeType" in raw or "income_type" in raw


def execution_from_raw(raw: Dict[str, Any]) -> Execution:
    """
    Build an Execution from a raw fill payload.

    Raises:
        MalformedRecordError: required field missing or unparseable
    """
    values = {
        "symbol": _first(raw, "symbol", "pair"),
        "price": _first(raw, "price"),
        "quantity": _first(raw, "qty", "quantity", "executedQty"),
    }
    missing = [name for name in _FILL_REQUIRED if values[name] is None]
    if missing:
        raise MalformedRecordError(f"Fill record missing required fields: {', '.join(missing)}", record=raw)

    external_id = _first(raw, "external_id", "id", "tradeId", "trade_id")
    if external_id is None:
        raise MalformedRecordError("Fill record has no external id", record=raw)

    side_raw = _first(raw, "side")
    if side_raw is None:
        raise MalformedRecordError("Fill record has no side", record=raw)
    try:
        side = Side(str(side_raw).upper())
    except ValueError:
        raise MalformedRecordError(f"Unknown side: {side_raw!r}", record=raw)

    time_raw = _first(raw, "timestamp", "time")
    if time_raw is None:
        raise MalformedRecordError("Fill record has no timestamp", record=raw)
    try:
        timestamp = parse_timestamp(time_raw)
    except (ValueError, TypeError, OverflowError):
        raise MalformedRecordError(f"Unparseable timestamp: {time_raw!r}", record=raw)

    position_side_raw = _first(raw, "positionSide", "position_side") or "BOTH"
    try:
        position_side = PositionSide(str(position_side_raw).upper())
    except ValueError:
        position_side = PositionSide.BOTH

    fee = _to_decimal(_first(raw, "fee", "commission") or "0", "fee", raw)
    maker = _first(raw, "maker", "is_maker")

    return Execution(
        external_id=str(external_id),
        symbol=str(values["symbol"]).upper(),
        side=side,
        price=_to_decimal(values["price"], "price", raw),
        quantity=_to_decimal(values["quantity"], "quantity", raw),
        # Commission is reported negative by some feeds; fees are stored as cost
        fee=abs(fee),
        fee_asset=str(_first(raw, "fee_asset", "commissionAsset", "marginAsset") or "USDT"),
        timestamp=timestamp,
        order_id=str(_first(raw, "order_id", "orderId") or ""),
        position_side=position_side,
        is_maker=_to_bool(maker),
    )


def income_from_raw(raw: Dict[str, Any]) -> IncomeEvent:
    """
    Build an IncomeEvent from a raw income payload.

    Raises:
        MalformedRecordError: required field missing or unparseable
    """
    amount_raw = _first(raw, "income", "amount")
    income_type_raw = _first(raw, "incomeType", "income_type")
    time_raw = _first(raw, "time", "timestamp")
    external_id = _first(raw, "tranId", "external_id", "id")
    if amount_raw is None or income_type_raw is None or time_raw is None or external_id is None:
        raise MalformedRecordError("Income record missing required fields", record=raw)
    try:
        timestamp = parse_timestamp(time_raw)
    except (ValueError, TypeError, OverflowError):
        raise MalformedRecordError(f"Unparseable timestamp: {time_raw!r}", record=raw)

    trade_id = _first(raw, "tradeId", "trade_id")
    return IncomeEvent(
        external_id=str(external_id),
        # Transfers carry no symbol
        symbol=str(_first(raw, "symbol") or "").upper(),
        income_type=IncomeType.parse(income_type_raw),
        amount=_to_decimal(amount_raw, "income", raw),
        asset=str(_first(raw, "asset") or "USDT"),
        timestamp=timestamp,
        trade_id=str(trade_id) if trade_id is not None else None,
        info=str(_first(raw, "info") or ""),
    )


@dataclass
class NormalizedBatch:
    """Normalizer output plus the counters the run statistics report."""
    executions: List[Execution] = field(default_factory=list)
    income_events: List[IncomeEvent] = field(default_factory=list)
    dropped: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)


class ExecutionNormalizer:
    """
    Deduplicates and canonicalizes raw feed records.

    Duplicate delivery across paginated calls is expected: the first copy of
    an external id wins. Output is sorted by (timestamp, external_id) so the
    result does not depend on page delivery order.
    """

    def __init__(self, max_error_samples: int = 20):
        self.max_error_samples = max_error_samples

    def normalize_batch(self, raw_records: Iterable[Dict[str, Any]]) -> NormalizedBatch:
        batch = NormalizedBatch()
        seen_fills: Dict[str, Execution] = {}
        seen_income: Dict[str, IncomeEvent] = {}

        for raw in raw_records:
            if not isinstance(raw, dict):
                self._drop(batch, MalformedRecordError(f"Record is not a mapping: {type(raw).__name__}"))
                continue
            try:
                if is_income_record(raw):
                    event = income_from_raw(raw)
                    if event.external_id in seen_income:
                        batch.duplicates += 1
                        continue
                    seen_income[event.external_id] = event
                else:
                    execution = execution_from_raw(raw)
                    if execution.external_id in seen_fills:
                        batch.duplicates += 1
                        continue
                    seen_fills[execution.external_id] = execution
            except MalformedRecordError as e:
                self._drop(batch, e)

        batch.executions = sorted(seen_fills.values(), key=lambda x: x.sort_key)
        batch.income_events = sorted(seen_income.values(), key=lambda x: x.sort_key)

        logger.info(
            "NORMALIZE_SUMMARY",
            executions=len(batch.executions),
            income_events=len(batch.income_events),
            dropped=batch.dropped,
            duplicates=batch.duplicates,
        )
        return batch

    def _drop(self, batch: NormalizedBatch, error: MalformedRecordError) -> None:
        batch.dropped += 1
        if len(batch.errors) < self.max_error_samples:
            batch.errors.append(str(error))
        logger.warning("Dropped malformed record", error=str(error))


def normalize(raw_records: Iterable[Dict[str, Any]]) -> List[Execution]:
    """Normalize raw fill records into deduplicated, sorted executions."""
    return ExecutionNormalizer().normalize_batch(raw_records).executions
