"""
End-to-end trade reconciliation: paged feed -> normalize -> aggregate -> match
-> reconcile -> persist, against in-memory SQLite.
"""
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradeledger.config.config import RunParameters
from tradeledger.domain.protocols import FeedPage
from tradeledger.exceptions import PersistenceConflictError, UpstreamTimeoutError
from tradeledger.ingest.feed import StaticPageFeed
from tradeledger.reconciliation.pipeline import TradeReconciliationService

T0 = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _at(minutes: int) -> str:
    return (T0 + timedelta(minutes=minutes)).isoformat()


def _fill(fill_id, side, price, qty, minutes, symbol="BTCUSDT") -> dict:
    return {
        "id": fill_id,
        "symbol": symbol,
        "side": side,
        "price": str(price),
        "qty": str(qty),
        "commission": "-0.1",
        "commissionAsset": "USDT",
        "time": _at(minutes),
        "orderId": f"o-{fill_id}",
        "positionSide": "BOTH",
    }


def _income(tran_id, income_type, amount, minutes, trade_id=None, symbol="BTCUSDT") -> dict:
    return {
        "tranId": tran_id,
        "symbol": symbol,
        "incomeType": income_type,
        "income": str(amount),
        "asset": "USDT",
        "time": _at(minutes),
        "tradeId": trade_id,
    }


def _pages(realized_pnl="30"):
    return [
        [
            _fill(1, "BUY", 100, 1, 0),
            _fill(2, "BUY", 110, 1, 5),
            _income("f-1", "FUNDING_FEE", "-0.05", 10),
        ],
        [
            # Redelivered across pages
            _fill(2, "BUY", 110, 1, 5),
            _fill(3, "SELL", 120, 2, 30),
            {"id": 99, "symbol": "BTCUSDT", "side": "BUY", "time": _at(31)},
            _income("p-1", "REALIZED_PNL", realized_pnl, 30, trade_id="3"),
            _income("c-1", "COMMISSION", "-0.3", 30),
        ],
        [
            # Still open at the end of the batch
            _fill(4, "BUY", 2000, 1, 40, symbol="ETHUSDT"),
        ],
    ]


class _HangingFeed:

    async def fetch_page(self, cursor):
        await asyncio.sleep(1)
        return FeedPage(records=[], next_cursor=None)


@pytest.mark.asyncio
async def test_full_run_reconciles_and_persists(gateway):
    service = TradeReconciliationService(gateway, RunParameters())

    result = await service.run("acc-1", StaticPageFeed(_pages()))

    recon = result.reconciliation
    assert recon.is_reconciled
    assert recon.aggregated_total_pnl == Decimal("30")
    assert recon.ledger_total_pnl == Decimal("30")
    assert recon.matched_income_pnl == Decimal("30")

    stats = result.stats
    assert stats.total_lifecycles == 2
    assert stats.complete_lifecycles == 1
    assert stats.incomplete_lifecycles == 1
    assert stats.valid_trades == 1
    assert stats.invalid_trades == 0
    assert stats.dropped_records == 1
    assert stats.duplicate_records == 1
    assert stats.unmatched_lifecycles == 0

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.entry_price == Decimal("105")
    assert trade.funding_fees == Decimal("-0.05")

    assert result.persisted_lifecycles == 1
    assert result.persisted_ledger_entries == 3
    assert gateway.count_lifecycles("acc-1") == 1


@pytest.mark.asyncio
async def test_rerun_is_idempotent(gateway):
    service = TradeReconciliationService(gateway, RunParameters())

    await service.run("acc-1", StaticPageFeed(_pages()))
    second = await service.run("acc-1", StaticPageFeed(_pages()))

    assert second.persisted_lifecycles == 0
    assert second.persisted_ledger_entries == 0
    assert gateway.count_lifecycles("acc-1") == 1


@pytest.mark.asyncio
async def test_ledger_mismatch_is_reported_not_raised(gateway):
    service = TradeReconciliationService(gateway, RunParameters(tolerance_pct=Decimal("1")))

    result = await service.run("acc-1", StaticPageFeed(_pages(realized_pnl="40")))

    assert not result.reconciliation.is_reconciled
    assert result.reconciliation.difference == Decimal("-10")
    assert result.reconciliation.difference_percent == Decimal("-25")
    assert result.stats.invalid_trades == 1


@pytest.mark.asyncio
async def test_timeout_persists_nothing(gateway):
    service = TradeReconciliationService(gateway, RunParameters(fetch_timeout_seconds=0.1))

    with pytest.raises(UpstreamTimeoutError):
        await service.run("acc-1", _HangingFeed())

    assert gateway.count_lifecycles("acc-1") == 0


@pytest.mark.asyncio
async def test_page_cap_persists_nothing(gateway):
    service = TradeReconciliationService(gateway, RunParameters(max_pages=2))

    with pytest.raises(UpstreamTimeoutError):
        await service.run("acc-1", StaticPageFeed(_pages()))

    assert gateway.count_lifecycles("acc-1") == 0


@pytest.mark.asyncio
async def test_concurrent_run_for_same_account_conflicts(gateway):
    service = TradeReconciliationService(gateway, RunParameters())

    with gateway.account_lock(["acc-1"], owner="other-run"):
        with pytest.raises(PersistenceConflictError):
            await service.run("acc-1", StaticPageFeed(_pages()))

    assert gateway.count_lifecycles("acc-1") == 0


@pytest.mark.asyncio
async def test_dry_run_without_gateway():
    result = await TradeReconciliationService(None, RunParameters()).run("acc-1", StaticPageFeed(_pages()))

    assert result.persisted_lifecycles == 0
    exported = result.to_dict()
    assert set(exported) == {"stats", "reconciliation", "trades"}
    assert exported["stats"]["totalLifecycles"] == 2
    assert exported["reconciliation"]["isReconciled"] is True
    assert exported["trades"][0]["realizedPnl"] == Decimal("30.00")


@pytest.mark.asyncio
async def test_cpu_and_db_work_runs_off_the_event_loop(gateway, monkeypatch):
    from tradeledger.reconciliation import pipeline

    loop_thread = threading.get_ident()
    seen = {}
    original_build = pipeline.build_reconciliation_result
    original_persist = TradeReconciliationService._persist

    def _build(batch, params):
        seen["build"] = threading.get_ident()
        return original_build(batch, params)

    def _persist(self, account_id, run_id, result):
        seen["persist"] = threading.get_ident()
        return original_persist(self, account_id, run_id, result)

    monkeypatch.setattr(pipeline, "build_reconciliation_result", _build)
    monkeypatch.setattr(TradeReconciliationService, "_persist", _persist)

    result = await TradeReconciliationService(gateway, RunParameters()).run("acc-1", StaticPageFeed(_pages()))

    assert result.persisted_lifecycles == 1
    assert seen["build"] != loop_thread
    assert seen["persist"] != loop_thread
