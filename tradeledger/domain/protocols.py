"""
Domain protocols (interfaces) for dependency inversion.

The upstream exchange-data collaborator is only known through these
contracts, so the engine never depends on a concrete transport.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@dataclass
class FeedPage:
    """One page of raw fill/income records from the upstream feed."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


@runtime_checkable
class ExecutionFeed(Protocol):
    """
    Paginated source of raw fill and income records.

    Pages may overlap (duplicate delivery) and arrive out of timestamp order;
    the normalizer handles both. ``cursor=None`` requests the first page and a
    page with ``next_cursor=None`` is the last one.
    """

    async def fetch_page(self, cursor: Optional[str]) -> FeedPage: ...
