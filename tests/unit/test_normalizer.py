"""
Unit tests for the Execution Normalizer: payload shapes, dedup, ordering, malformed rows.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradeledger.domain.models import IncomeType, PositionSide, Side
from tradeledger.exceptions import MalformedRecordError
from tradeledger.ingest.normalizer import (
    ExecutionNormalizer,
    execution_from_raw,
    income_from_raw,
    is_income_record,
    normalize,
    parse_timestamp,
)


def _raw_fill(fill_id, time_ms=1767225600000, **overrides) -> dict:
    raw = {
        "id": fill_id,
        "symbol": "btcusdt",
        "side": "BUY",
        "price": "100.5",
        "qty": "2",
        "commission": "-0.04",
        "commissionAsset": "USDT",
        "time": time_ms,
        "orderId": 77,
        "positionSide": "BOTH",
        "maker": False,
    }
    raw.update(overrides)
    return raw


def _raw_income(tran_id, amount="12.5", income_type="REALIZED_PNL", **overrides) -> dict:
    raw = {
        "tranId": tran_id,
        "symbol": "BTCUSDT",
        "incomeType": income_type,
        "income": amount,
        "asset": "USDT",
        "time": 1767225660000,
        "tradeId": "",
        "info": "",
    }
    raw.update(overrides)
    return raw


def test_execution_from_camel_case_fill():
    execution = execution_from_raw(_raw_fill(1))
    assert execution.external_id == "1"
    assert execution.symbol == "BTCUSDT"
    assert execution.side == Side.BUY
    assert execution.price == Decimal("100.5")
    assert execution.quantity == Decimal("2")
    # Negative commission stored as a cost
    assert execution.fee == Decimal("0.04")
    assert execution.order_id == "77"
    assert execution.position_side == PositionSide.BOTH
    assert execution.is_maker is False
    assert execution.timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("maker, expected", [
    ("false", False),
    ("FALSE", False),
    ("True", True),
    ("true", True),
    (1, True),
    (0, False),
    ("maybe", None),
])
def test_maker_flag_parsing(maker, expected):
    assert execution_from_raw(_raw_fill(1, maker=maker)).is_maker is expected


def test_execution_from_snake_case_fill():
    raw = {
        "external_id": "f-1",
        "symbol": "ETHUSDT",
        "side": "sell",
        "price": 2500,
        "quantity": 0.5,
        "fee": 0.1,
        "timestamp": "2026-01-01T00:00:00Z",
        "position_side": "SHORT",
    }
    execution = execution_from_raw(raw)
    assert execution.side == Side.SELL
    # Floats go through str(): no binary expansion
    assert execution.quantity == Decimal("0.5")
    assert execution.fee == Decimal("0.1")
    assert execution.position_side == PositionSide.SHORT


@pytest.mark.parametrize("missing", ["symbol", "price", "qty"])
def test_fill_missing_required_field_is_malformed(missing):
    raw = _raw_fill(1)
    del raw[missing]
    with pytest.raises(MalformedRecordError):
        execution_from_raw(raw)


def test_fill_with_unknown_side_is_malformed():
    with pytest.raises(MalformedRecordError):
        execution_from_raw(_raw_fill(1, side="HOLD"))


def test_fill_with_nan_price_is_malformed():
    with pytest.raises(MalformedRecordError):
        execution_from_raw(_raw_fill(1, price="NaN"))


def test_zero_quantity_passes_normalization():
    """Positivity is the aggregator's concern; the normalizer passes the row through."""
    execution = execution_from_raw(_raw_fill(1, qty="0"))
    assert execution.quantity == Decimal("0")


def test_income_record_detection():
    assert is_income_record(_raw_income(1))
    assert is_income_record({"kind": "income"})
    assert not is_income_record(_raw_fill(1))
    assert not is_income_record({"kind": "fill", "incomeType": "REALIZED_PNL"})


def test_income_from_raw():
    event = income_from_raw(_raw_income(9, tradeId=555))
    assert event.external_id == "9"
    assert event.income_type == IncomeType.REALIZED_PNL
    assert event.amount == Decimal("12.5")
    assert event.trade_id == "555"


def test_income_empty_trade_id_is_none():
    assert income_from_raw(_raw_income(9)).trade_id is None


def test_unknown_income_type_maps_to_other():
    assert income_from_raw(_raw_income(9, income_type="INSURANCE_CLEAR")).income_type == IncomeType.OTHER


def test_parse_timestamp_accepts_seconds_and_millis():
    assert parse_timestamp(1767225600) == parse_timestamp(1767225600000)
    assert parse_timestamp("1767225600000") == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_parse_timestamp_naive_datetime_is_utc():
    assert parse_timestamp(datetime(2026, 1, 1)).tzinfo is not None


class TestNormalizeBatch:
    def test_duplicates_across_pages_keep_first_copy(self):
        first = _raw_fill(1, price="100")
        second = _raw_fill(1, price="999")
        batch = ExecutionNormalizer().normalize_batch([first, second])
        assert len(batch.executions) == 1
        assert batch.executions[0].price == Decimal("100")
        assert batch.duplicates == 1

    def test_output_sorted_by_timestamp_then_id(self):
        raws = [
            _raw_fill("b", time_ms=1767225600000),
            _raw_fill("c", time_ms=1767225500000),
            _raw_fill("a", time_ms=1767225600000),
        ]
        ids = [e.external_id for e in normalize(raws)]
        assert ids == ["c", "a", "b"]

    def test_output_independent_of_delivery_order(self):
        raws = [_raw_fill(i, time_ms=1767225600000 + i * 1000) for i in range(5)]
        forward = normalize(raws)
        backward = normalize(list(reversed(raws)))
        assert forward == backward

    def test_malformed_rows_are_dropped_and_counted(self):
        bad = _raw_fill(2)
        del bad["price"]
        batch = ExecutionNormalizer().normalize_batch([_raw_fill(1), bad, "not-a-record"])
        assert len(batch.executions) == 1
        assert batch.dropped == 2
        assert len(batch.errors) == 2

    def test_income_and_fills_are_split(self):
        batch = ExecutionNormalizer().normalize_batch([_raw_fill(1), _raw_income(1), _raw_income(1)])
        assert len(batch.executions) == 1
        assert len(batch.income_events) == 1
        assert batch.duplicates == 1

    def test_error_samples_are_capped(self):
        bad = [{"id": i, "side": "BUY"} for i in range(5)]
        batch = ExecutionNormalizer(max_error_samples=2).normalize_batch(bad)
        assert batch.dropped == 5
        assert len(batch.errors) == 2
