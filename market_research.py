"""
market_research.py — sold / active comps, sell-through and a description,
fetched concurrently for an identified item.

Three sub-calls run side by side and are joined (not raced):

  comparables   market.compare(query, SOLD) + market.compare(query, ACTIVE)
  sell-through  market.sell_through(query)     → zeroed record on failure
  description   describer.generate(title, …)   → None on failure

Each sub-call has its own deadline and its own fallback, so one failing
never takes the others down.  They write disjoint parts of MarketResearch.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import config
from models import MarketStats, PartialResult
from search_backends.base import ACTIVE, SOLD, Comp, CompSearch, SellThrough
from timeouts import with_deadline

logger = logging.getLogger(__name__)

# Marker phrases backends append to titles; never shown to the user
_MARKER_RE = re.compile(r"\(\s*(?:estimated\s+sold|est\.?\s*sold|est\.?)\s*\)", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


def clean_title(title: Optional[str]) -> str:
    """
    Strip marker phrases such as "(Estimated Sold)" and collapse whitespace.
    Applied until nothing changes, so clean_title(clean_title(x)) == clean_title(x).
    """
    text = title or ""
    previous = None
    while text != previous:
        previous = text
        text = _MARKER_RE.sub(" ", text)
        text = _WS_RE.sub(" ", text).strip()
    return text


def compute_sell_through(sold_count: int, active_count: int) -> float:
    """Sold / active × 100, one decimal.  No active listings: 100 if anything sold."""
    if active_count <= 0:
        return 100.0 if sold_count > 0 else 0.0
    return round(sold_count / active_count * 100, 1)


@dataclass
class MarketResearch:
    sold: CompSearch = field(default_factory=CompSearch)
    active: CompSearch = field(default_factory=CompSearch)
    sell_through: SellThrough = field(default_factory=SellThrough.zeroed)
    sell_through_ok: bool = False
    description: Optional[str] = None

    def to_stats(self) -> MarketStats:
        sold_comps = [_clean_comp(c) for c in self.sold.items]
        active_comps = [_clean_comp(c) for c in self.active.items]

        sold_count = self.sell_through.sold_count
        active_count = self.sell_through.active_count
        if self.sell_through_ok:
            # Totals can't be lower than what we actually found
            sold_count = max(sold_count, len(sold_comps))
            active_count = max(active_count, len(active_comps))
            rate = compute_sell_through(sold_count, active_count)
        else:
            rate = 0.0

        return MarketStats(
            sold_count=sold_count,
            active_count=active_count,
            sell_through_rate=rate,
            active_comps=active_comps,
            sold_comps=sold_comps,
            average_sold_price=self.sold.average_price,
            average_active_price=self.active.average_price,
            is_estimated=self.sold.is_estimated,
        )

    def to_patch(self) -> PartialResult:
        return PartialResult(market_stats=self.to_stats(), description=self.description or None)


def _clean_comp(comp: Comp) -> Comp:
    return Comp(
        id=comp.id,
        title=clean_title(comp.title),
        price=comp.price,
        shipping=comp.shipping,
        url=comp.url,
        condition=comp.condition,
        image=comp.image,
        date_sold=comp.date_sold,
    )


async def _comparables(market, query: str, condition: str, timeout: float) -> tuple[CompSearch, CompSearch]:
    async def _one(tab: str) -> CompSearch:
        try:
            operation = market.compare(query, tab, condition)
        except Exception as exc:
            logger.error("[comps:%s] failed: %s", tab.lower(), exc)
            return CompSearch()
        return await with_deadline(operation, timeout, fallback=CompSearch(), label=f"comps:{tab.lower()}")

    sold, active = await asyncio.gather(_one(SOLD), _one(ACTIVE))
    return sold, active


async def _sell_through(market, query: str, timeout: float) -> Optional[SellThrough]:
    try:
        operation = market.sell_through(query)
    except Exception as exc:
        logger.error("[sell-through] failed: %s", exc)
        return None
    return await with_deadline(operation, timeout, fallback=None, label="sell-through")


async def _describe(describer, title: str, notes: str, platform: str, timeout: float) -> Optional[str]:
    try:
        operation = describer.generate(title, notes, platform)
    except Exception as exc:
        logger.error("[describe] failed: %s", exc)
        return None
    text = await with_deadline(operation, timeout, fallback=None, label="describe")
    return text or None


async def research(
    market,
    describer,
    title: str,
    search_query: str,
    condition: Optional[str] = None,
    notes: str = "",
    platform: Optional[str] = None,
    timeout: Optional[float] = None,
) -> MarketResearch:
    """Run all market sub-calls concurrently and join them.  Never raises."""
    timeout = config.MARKET_TIMEOUT if timeout is None else timeout
    condition = (condition or config.ITEM_CONDITION).upper()
    platform = platform or config.LISTING_PLATFORM
    title = clean_title(title)
    query = search_query or title

    (sold, active), stats, description = await asyncio.gather(
        _comparables(market, query, condition, timeout),
        _sell_through(market, query, timeout),
        _describe(describer, title, notes, platform, timeout),
    )

    result = MarketResearch(
        sold=sold,
        active=active,
        sell_through=stats if stats is not None else SellThrough.zeroed(),
        sell_through_ok=stats is not None,
        description=description,
    )
    logger.info(
        "Market research '%s': %d sold / %d active comps, sell-through %s, description %s",
        query, len(sold.items), len(active.items),
        f"{result.to_stats().sell_through_rate}%" if result.sell_through_ok else "unavailable",
        "ok" if description else "missing",
    )
    return result
