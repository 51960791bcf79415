"""
Hosted comps backend — calls a deployed search-comps endpoint instead of eBay.

Useful when the eBay app credentials live on a server and must not ship with
the client.  The endpoint contract:

  GET {base}/api/ebay/search-comps?query=...&tab=SOLD|ACTIVE&condition=NEW|USED
  → {"averagePrice": "12.34", "comps": [{id, title, price, shipping, url, ...}],
     "isEstimated": false, "total": 123}

"total" is optional; without it counts fall back to the number of comps.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from search_backends.base import ACTIVE, SOLD, Comp, CompSearch, SearchBackend, SellThrough

logger = logging.getLogger(__name__)

SEARCH_PATH = "/api/ebay/search-comps"


class ProxyBackend(SearchBackend):

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return f"Hosted comps API ({self._base_url})"

    async def search(
        self,
        query: str,
        tab: str = ACTIVE,
        condition: str = "USED",
        limit: int = 10,
    ) -> CompSearch:
        data = await self._fetch(query, tab, condition)
        items = [c for c in (_parse_comp(raw) for raw in data.get("comps") or []) if c][:limit]
        result = CompSearch.from_items(items, is_estimated=bool(data.get("isEstimated")))
        logger.info("Comps API returned %d %s comps for '%s'", len(items), tab.lower(), query)
        return result

    async def count(self, query: str) -> SellThrough:
        active, sold = await asyncio.gather(
            self._fetch(query, ACTIVE, None),
            self._fetch(query, SOLD, None),
        )
        return SellThrough(active_count=_total(active), sold_count=_total(sold))

    # ── HTTP helper ───────────────────────────────────────────────────────────

    async def _fetch(self, query: str, tab: str, condition: Optional[str]) -> dict:
        params = {"query": query, "tab": tab}
        if condition:
            params["condition"] = condition
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"{self._base_url}{SEARCH_PATH}",
                params=params,
                timeout=aiohttp.ClientTimeout(total=15),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RuntimeError(f"Comps API error {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)


def _total(data: dict) -> int:
    try:
        return int(data["total"])
    except (KeyError, TypeError, ValueError):
        return len(data.get("comps") or [])


def _parse_comp(raw: dict) -> Optional[Comp]:
    try:
        if not raw or not raw.get("id"):
            return None
        return Comp(
            id=str(raw["id"]),
            title=(raw.get("title") or "").strip(),
            price=float(raw.get("price") or 0),
            shipping=float(raw.get("shipping") or 0),
            url=raw.get("url") or "",
            condition=raw.get("condition"),
            image=raw.get("image"),
            date_sold=raw.get("dateSold"),
        )
    except (TypeError, ValueError) as exc:
        logger.warning("Failed to parse comp %s: %s", raw.get("id", "?"), exc)
        return None
