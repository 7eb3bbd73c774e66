"""
Bounded fetch from the upstream execution/income feed.

The whole fetch is all-or-nothing: on timeout or page-cap overrun the pages
fetched so far are discarded and the run fails before anything is computed
or persisted.
"""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tradeledger.constants import DEFAULT_FETCH_TIMEOUT_SECONDS, DEFAULT_MAX_PAGES
from tradeledger.domain.protocols import ExecutionFeed, FeedPage
from tradeledger.exceptions import PageLimitExceededError, UpstreamTimeoutError
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)


async def _drain(feed: ExecutionFeed, max_pages: int) -> List[Dict[str, Any]]:
    records: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    pages = 0
    while True:
        if pages >= max_pages:
            raise PageLimitExceededError(
                f"Upstream feed still has pages after the cap of {max_pages}; refusing a partial batch"
            )
        page = await feed.fetch_page(cursor)
        pages += 1
        records.extend(page.records)
        logger.debug("FEED_PAGE", page=pages, records=len(page.records), has_more=page.next_cursor is not None)
        if page.next_cursor is None:
            break
        cursor = page.next_cursor
    logger.info("FEED_FETCHED", pages=pages, records=len(records))
    return records


async def fetch_all_records(
    feed: ExecutionFeed,
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> List[Dict[str, Any]]:
    """
    Fetch every page from the feed.

    Args:
        feed: Upstream collaborator
        timeout_seconds: Deadline for the whole fetch
        max_pages: Maximum number of pages to request

    Returns:
        Raw records in delivery order (may contain duplicates)

    Raises:
        UpstreamTimeoutError: Deadline exceeded; nothing fetched is kept
        PageLimitExceededError: More pages than ``max_pages``
    """
    try:
        return await asyncio.wait_for(_drain(feed, max_pages), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.error("FEED_TIMEOUT", timeout_seconds=timeout_seconds)
        raise UpstreamTimeoutError(f"Upstream feed did not complete within {timeout_seconds}s")


class StaticPageFeed:
    """In-memory feed over pre-fetched pages (exports, replays, tests)."""

    def __init__(self, pages: Sequence[Sequence[Dict[str, Any]]]):
        self._pages = [list(p) for p in pages] or [[]]

    async def fetch_page(self, cursor: Optional[str]) -> FeedPage:
        index = int(cursor) if cursor is not None else 0
        next_cursor = str(index + 1) if index + 1 < len(self._pages) else None
        return FeedPage(records=self._pages[index], next_cursor=next_cursor)

    @classmethod
    def from_json_file(cls, path: str | Path, page_size: int = 500) -> "StaticPageFeed":
        """
        Load records from a JSON export.

        Accepts a flat list of records, a list of pages, or an object with
        ``trades`` and ``income`` lists.
        """
        with open(path, "r") as f:
            payload = json.load(f)

        if isinstance(payload, dict):
            records = list(payload.get("trades", [])) + [
                dict(r, kind="income") for r in payload.get("income", [])
            ]
        elif payload and all(isinstance(p, list) for p in payload):
            return cls(payload)
        else:
            records = list(payload)

        pages = [records[i:i + page_size] for i in range(0, len(records), page_size)]
        return cls(pages)
