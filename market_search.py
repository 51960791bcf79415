"""
market_search.py — public interface for comparable-listing search.

The pipeline only uses the two module-level functions here:
  compare(query, tab, condition)  → CompSearch
  sell_through(query)             → SellThrough

Backend is chosen from config.MARKET_BACKEND:

  MARKET_BACKEND=ebay   →  eBay Browse + Finding APIs (needs EBAY_APP_ID / EBAY_CERT_ID)
  MARKET_BACKEND=proxy  →  hosted comps endpoint (needs COMPS_API_BASE_URL)
  MARKET_BACKEND=auto   →  ebay if credentials are present, else proxy (default)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import config
from search_backends.base import ACTIVE, Comp, CompSearch, SearchBackend, SellThrough

logger = logging.getLogger(__name__)

__all__ = ["Comp", "CompSearch", "SellThrough", "compare", "sell_through", "get_backend", "backend_name"]

_backend: Optional[SearchBackend] = None

# Fewer comps than this triggers one retry with a broader query
MIN_COMPS = 3


def get_backend() -> SearchBackend:
    """Return the active backend, initialising it once on first call."""
    global _backend
    if _backend is not None:
        return _backend
    _backend = _build_backend()
    logger.info("Market backend: %s", _backend.name)
    return _backend


def backend_name() -> str:
    try:
        return get_backend().name
    except Exception:
        return "not configured"


def _build_backend() -> SearchBackend:
    mode = config.MARKET_BACKEND.lower()

    has_ebay  = bool(config.EBAY_APP_ID and config.EBAY_CERT_ID)
    has_proxy = bool(config.COMPS_API_BASE_URL)

    if mode == "ebay":
        if not has_ebay:
            raise RuntimeError(
                "MARKET_BACKEND=ebay but EBAY_APP_ID / EBAY_CERT_ID are not set."
            )
        return _make_ebay()

    if mode == "proxy":
        if not has_proxy:
            raise RuntimeError(
                "MARKET_BACKEND=proxy but COMPS_API_BASE_URL is not set."
            )
        return _make_proxy()

    # auto mode: eBay direct → hosted comps API
    if has_ebay:
        logger.info("Auto-selected eBay backend")
        return _make_ebay()
    if has_proxy:
        logger.info("Auto-selected hosted comps backend")
        return _make_proxy()

    raise RuntimeError(
        "No market backend configured.\n"
        "Set EBAY_APP_ID + EBAY_CERT_ID, or COMPS_API_BASE_URL, in .env"
    )


def _make_ebay() -> SearchBackend:
    from search_backends.ebay_backend import EbayBackend
    return EbayBackend(
        app_id=config.EBAY_APP_ID, cert_id=config.EBAY_CERT_ID,
        marketplace=config.EBAY_MARKETPLACE,
    )


def _make_proxy() -> SearchBackend:
    from search_backends.proxy_backend import ProxyBackend
    return ProxyBackend(base_url=config.COMPS_API_BASE_URL)


def broader_query(query: str) -> str:
    """Drop trailing words (usually variant / colour) — first three words only."""
    words = query.split()
    return " ".join(words[:3])


# ── Public functions ──────────────────────────────────────────────────────────

async def compare(
    query: str,
    tab: str = ACTIVE,
    condition: str = "USED",
    limit: Optional[int] = None,
) -> CompSearch:
    """
    Comparable-listing search.

    Steps:
      1. Search the exact comp query.
      2. If fewer than MIN_COMPS come back, retry once with a broader query.
      3. De-duplicate by listing id, keeping the first occurrence.

    Errors from the primary search propagate; the broader retry is best-effort.
    """
    limit = limit or config.MAX_COMPS
    backend = get_backend()

    primary = await backend.search(query, tab, condition, limit)
    seen: dict[str, Comp] = {c.id: c for c in primary.items}
    logger.info("[%s] %s '%s' → %d comps", backend.name, tab, query, len(seen))

    fallback = broader_query(query)
    if len(seen) < MIN_COMPS and fallback and fallback != query:
        # small delay to avoid burst rate-limiting
        await asyncio.sleep(0.5)
        try:
            extra = await backend.search(fallback, tab, condition, limit)
            for comp in extra.items:
                seen.setdefault(comp.id, comp)
            logger.info("[%s] %s fallback '%s' → %d total", backend.name, tab, fallback, len(seen))
            return CompSearch.from_items(
                list(seen.values())[:limit],
                is_estimated=primary.is_estimated or extra.is_estimated,
            )
        except Exception as exc:
            logger.warning("Fallback comp search failed: %s", exc)

    return CompSearch.from_items(list(seen.values())[:limit], is_estimated=primary.is_estimated)


async def sell_through(query: str) -> SellThrough:
    """Active / sold totals plus the sell-through rate."""
    from market_research import compute_sell_through

    stats = await get_backend().count(query)
    stats.sell_through_rate = compute_sell_through(stats.sold_count, stats.active_count)
    return stats
