"""
Abstract base for all marketplace search backends.
Every backend must return the same Comp / CompSearch / SellThrough types —
the rest of the pipeline doesn't care which backend is active.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

SOLD   = "SOLD"
ACTIVE = "ACTIVE"


@dataclass
class Comp:
    """One comparable listing (sold or currently active)."""
    id: str
    title: str
    price: float
    shipping: float
    url: str
    condition: Optional[str] = None
    image: Optional[str] = None
    date_sold: Optional[str] = None     # ISO timestamp, sold comps only

    # Computed at post-init
    total: float = field(init=False)

    def __post_init__(self) -> None:
        self.total = round(self.price + self.shipping, 2)


@dataclass
class CompSearch:
    """Result of one comparable-listing search."""
    items: list[Comp] = field(default_factory=list)
    average_price: float = 0.0
    is_estimated: bool = False          # sold prices inferred from active listings

    @classmethod
    def from_items(cls, items: list[Comp], is_estimated: bool = False) -> "CompSearch":
        avg = sum(c.total for c in items) / len(items) if items else 0.0
        return cls(items=items, average_price=round(avg, 2), is_estimated=is_estimated)


@dataclass
class SellThrough:
    """Aggregate demand statistic for a query."""
    active_count: int = 0
    sold_count: int = 0
    sell_through_rate: float = 0.0

    @classmethod
    def zeroed(cls) -> "SellThrough":
        return cls()


class SearchBackend(ABC):
    """All backends must implement this interface."""

    @abstractmethod
    async def search(
        self,
        query: str,
        tab: str = ACTIVE,
        condition: str = "USED",
        limit: int = 10,
    ) -> CompSearch:
        """
        Search the marketplace for comparables matching `query`.
        tab is SOLD or ACTIVE; condition is NEW or USED.
        """
        ...

    @abstractmethod
    async def count(self, query: str) -> SellThrough:
        """Return active / sold totals for `query` (rate is filled by the caller)."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name for logs/display."""
        ...
