"""
Unit tests for bounded feed fetching: timeout, page cap, JSON export replay.
"""
import asyncio
import json

import pytest

from tradeledger.domain.protocols import ExecutionFeed, FeedPage
from tradeledger.exceptions import PageLimitExceededError, UpstreamTimeoutError
from tradeledger.ingest.feed import StaticPageFeed, fetch_all_records


class _SlowFeed:
    """Never-ending feed with a delay per page."""

    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0

    async def fetch_page(self, cursor):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return FeedPage(records=[{"id": self.calls}], next_cursor=str(self.calls))


def test_static_feed_satisfies_protocol():
    assert isinstance(StaticPageFeed([[]]), ExecutionFeed)


@pytest.mark.asyncio
async def test_fetch_concatenates_pages_in_order():
    feed = StaticPageFeed([[{"id": 1}, {"id": 2}], [{"id": 2}], [{"id": 3}]])
    records = await fetch_all_records(feed, timeout_seconds=5, max_pages=10)
    assert [r["id"] for r in records] == [1, 2, 2, 3]


@pytest.mark.asyncio
async def test_page_cap_exceeded_raises():
    feed = StaticPageFeed([[{"id": i}] for i in range(5)])
    with pytest.raises(PageLimitExceededError):
        await fetch_all_records(feed, timeout_seconds=5, max_pages=3)


@pytest.mark.asyncio
async def test_page_cap_exactly_reached_is_fine():
    feed = StaticPageFeed([[{"id": i}] for i in range(3)])
    records = await fetch_all_records(feed, timeout_seconds=5, max_pages=3)
    assert len(records) == 3


@pytest.mark.asyncio
async def test_timeout_raises_upstream_timeout():
    feed = _SlowFeed(delay=0.05)
    with pytest.raises(UpstreamTimeoutError):
        await fetch_all_records(feed, timeout_seconds=0.2, max_pages=1000)
    assert feed.calls >= 1


@pytest.mark.asyncio
async def test_page_limit_is_an_upstream_timeout():
    feed = _SlowFeed(delay=0)
    with pytest.raises(UpstreamTimeoutError):
        await fetch_all_records(feed, timeout_seconds=5, max_pages=2)


@pytest.mark.asyncio
async def test_from_json_file_with_trades_and_income(tmp_path):
    path = tmp_path / "export.json"
    path.write_text(json.dumps({
        "trades": [{"id": 1}, {"id": 2}, {"id": 3}],
        "income": [{"tranId": 9, "incomeType": "REALIZED_PNL"}],
    }))
    feed = StaticPageFeed.from_json_file(path, page_size=2)
    records = await fetch_all_records(feed, timeout_seconds=5, max_pages=10)

    assert len(records) == 4
    assert records[-1]["kind"] == "income"


@pytest.mark.asyncio
async def test_from_json_file_with_pages(tmp_path):
    path = tmp_path / "pages.json"
    path.write_text(json.dumps([[{"id": 1}], [{"id": 2}]]))
    feed = StaticPageFeed.from_json_file(path)
    records = await fetch_all_records(feed, timeout_seconds=5, max_pages=2)
    assert [r["id"] for r in records] == [1, 2]
