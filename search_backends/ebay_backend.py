"""
eBay backend — talks to eBay's public APIs directly.

  ACTIVE comps → Browse API   item_summary/search   (app token, OAuth client credentials)
  SOLD comps   → Finding API  findCompletedItems    (app id only)

The Finding API is flaky and rate-limited hard.  When it fails, sold comps
are estimated from the active listings instead: each title gets an
"(Estimated Sold)" marker and the result is flagged is_estimated, so the UI
can label it.  Titles are sanitised again downstream before display.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Optional

import aiohttp

from search_backends.base import ACTIVE, SOLD, Comp, CompSearch, SearchBackend, SellThrough

logger = logging.getLogger(__name__)

# ── API constants ─────────────────────────────────────────────────────────────
TOKEN_URL   = "https://api.ebay.com/identity/v1/oauth2/token"
BROWSE_URL  = "https://api.ebay.com/buy/browse/v1/item_summary/search"
FINDING_URL = "https://svcs.ebay.com/services/search/FindingService/v1"
TOKEN_SCOPE = "https://api.ebay.com/oauth/api_scope"

ESTIMATED_SOLD_MARKER = "(Estimated Sold)"

_CONDITION_FILTERS = {
    "NEW":  "conditionIds:{1000|1500}",
    "USED": "conditionIds:{3000}",
}

_HTTP_TIMEOUT = aiohttp.ClientTimeout(total=15)


class EbayBackend(SearchBackend):

    def __init__(self, app_id: str, cert_id: str, marketplace: str = "EBAY_US") -> None:
        self._app_id = app_id
        self._cert_id = cert_id
        self._marketplace = marketplace
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "eBay Browse + Finding API"

    async def search(
        self,
        query: str,
        tab: str = ACTIVE,
        condition: str = "USED",
        limit: int = 10,
    ) -> CompSearch:
        if tab == SOLD:
            try:
                items, _ = await self._find_completed(query, limit)
                logger.info("eBay Finding returned %d sold comps for '%s'", len(items), query)
                return CompSearch.from_items(items)
            except (RuntimeError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("Finding API failed for '%s' (%s) — estimating sold from active", query, exc)
                active, _ = await self._browse(query, condition, limit)
                estimated = [_as_estimated_sold(c) for c in active]
                return CompSearch.from_items(estimated, is_estimated=True)

        items, _ = await self._browse(query, condition, limit)
        logger.info("eBay Browse returned %d active comps for '%s'", len(items), query)
        return CompSearch.from_items(items)

    async def count(self, query: str) -> SellThrough:
        (_, active_total), (_, sold_total) = await asyncio.gather(
            self._browse(query, None, 1),
            self._find_completed(query, 1),
        )
        return SellThrough(active_count=active_total, sold_count=sold_total)

    # ── Auth ──────────────────────────────────────────────────────────────────

    async def _app_token(self) -> str:
        """Client-credentials token, cached until shortly before it expires."""
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            basic = base64.b64encode(f"{self._app_id}:{self._cert_id}".encode()).decode()
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    TOKEN_URL,
                    headers={
                        "Authorization": f"Basic {basic}",
                        "Content-Type":  "application/x-www-form-urlencoded",
                    },
                    data={"grant_type": "client_credentials", "scope": TOKEN_SCOPE},
                    timeout=_HTTP_TIMEOUT,
                ) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise RuntimeError(f"eBay token error {resp.status}: {text[:200]}")
                    data = await resp.json()

            self._token = data["access_token"]
            # Refresh a minute early
            self._token_expires_at = time.monotonic() + int(data.get("expires_in", 7200)) - 60
            return self._token

    # ── HTTP helpers ──────────────────────────────────────────────────────────

    async def _get_json(self, url: str, params: dict, headers: Optional[dict] = None) -> dict:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, params=params, headers=headers, timeout=_HTTP_TIMEOUT) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RuntimeError(f"eBay error {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)

    async def _browse(self, query: str, condition: Optional[str], limit: int) -> tuple[list[Comp], int]:
        token = await self._app_token()
        filters = ["priceCurrency:USD"]
        if condition in _CONDITION_FILTERS:
            filters.append(_CONDITION_FILTERS[condition])
        data = await self._get_json(
            BROWSE_URL,
            params={"q": query, "limit": str(limit), "sort": "price", "filter": ",".join(filters)},
            headers={
                "Authorization":           f"Bearer {token}",
                "X-EBAY-C-MARKETPLACE-ID": self._marketplace,
            },
        )
        items = [c for c in (_parse_browse_item(raw) for raw in data.get("itemSummaries") or []) if c]
        return items, int(data.get("total") or len(items))

    async def _find_completed(self, query: str, limit: int) -> tuple[list[Comp], int]:
        params = {
            "OPERATION-NAME":               "findCompletedItems",
            "SERVICE-VERSION":              "1.13.0",
            "SECURITY-APPNAME":             self._app_id,
            "RESPONSE-DATA-FORMAT":         "JSON",
            "REST-PAYLOAD":                 "",
            "keywords":                     query,
            "paginationInput.entriesPerPage": str(limit),
            "sortOrder":                    "EndTimeSoonest",
            # No condition filter for sold items: it is too restrictive and
            # routinely produces zero results
            "itemFilter(0).name":  "SoldItemsOnly",
            "itemFilter(0).value": "true",
            "itemFilter(1).name":  "Currency",
            "itemFilter(1).value": "USD",
        }
        data = await self._get_json(FINDING_URL, params=params)
        try:
            response = data["findCompletedItemsResponse"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise RuntimeError(f"Unexpected Finding API payload: {str(data)[:200]}") from exc

        ack = _first(response.get("ack"))
        if ack not in ("Success", "Warning"):
            message = _first(_first(_first(response.get("errorMessage") or [{}]).get("error") or [{}]).get("message"))
            raise RuntimeError(f"Finding API {ack}: {message or 'unknown error'}")

        search_result = _first(response.get("searchResult")) or {}
        items = [c for c in (_parse_finding_item(raw) for raw in search_result.get("item") or []) if c]
        pagination = _first(response.get("paginationOutput")) or {}
        total = _to_int(_first(pagination.get("totalEntries")))
        return items, total if total is not None else len(items)


# ── Parsers ───────────────────────────────────────────────────────────────────

def _first(value):
    """Finding API wraps every scalar in a one-element list."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_browse_item(raw: dict) -> Optional[Comp]:
    try:
        item_id = raw.get("legacyItemId") or raw.get("itemId") or ""
        # Browse ids look like "v1|123456789|0"
        if "|" in item_id:
            parts = item_id.split("|")
            if len(parts) >= 2:
                item_id = parts[1]
        if not item_id:
            return None

        shipping = 0.0
        options = raw.get("shippingOptions") or []
        if options and options[0].get("shippingCost"):
            shipping = _to_float(options[0]["shippingCost"].get("value"))

        return Comp(
            id=item_id,
            title=(raw.get("title") or "").strip(),
            price=_to_float((raw.get("price") or {}).get("value")),
            shipping=shipping,
            url=raw.get("itemWebUrl") or "",
            condition=raw.get("condition") or "Used",
            image=(raw.get("image") or {}).get("imageUrl"),
        )
    except Exception as exc:
        logger.warning("Failed to parse Browse item %s: %s", raw.get("itemId", "?"), exc)
        return None


def _parse_finding_item(raw: dict) -> Optional[Comp]:
    try:
        item_id = _first(raw.get("itemId"))
        if not item_id:
            return None
        selling = _first(raw.get("sellingStatus")) or {}
        price = _to_float((_first(selling.get("currentPrice")) or {}).get("__value__"))

        shipping = 0.0
        shipping_info = _first(raw.get("shippingInfo")) or {}
        cost = _first(shipping_info.get("shippingServiceCost"))
        if cost:
            shipping = _to_float(cost.get("__value__"))

        condition = _first(raw.get("condition")) or {}
        listing = _first(raw.get("listingInfo")) or {}

        return Comp(
            id=str(item_id),
            title=(_first(raw.get("title")) or "").strip(),
            price=price,
            shipping=shipping,
            url=_first(raw.get("viewItemURL")) or "",
            condition=_first(condition.get("conditionDisplayName")) or "Used",
            image=_first(raw.get("galleryURL")),
            date_sold=_first(listing.get("endTime")),
        )
    except Exception as exc:
        logger.warning("Failed to parse Finding item %s: %s", raw.get("itemId", "?"), exc)
        return None


def _as_estimated_sold(comp: Comp) -> Comp:
    return Comp(
        id=comp.id,
        title=f"{comp.title} {ESTIMATED_SOLD_MARKER}",
        price=comp.price,
        shipping=comp.shipping,
        url=comp.url,
        condition=comp.condition,
        image=comp.image,
    )
