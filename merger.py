"""
merger.py — folds stage patches into the live AnalysisResult and publishes it.

Merge is field-level last-writer-wins, but only for informative values:
None, empty strings, "Unknown" and non-positive numbers never overwrite
anything.  Together with "a generic title never replaces a resolved one"
this keeps every publish monotone: shown information is never taken away.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import config
from identification import is_generic
from market_research import clean_title
from models import (
    DEFAULT_SPECIFIC_KEYS,
    GENERIC_CONFIDENCE,
    RESOLVED_CONFIDENCE,
    UNKNOWN,
    AnalysisResult,
    Identification,
    PartialResult,
    ScanPhase,
)

logger = logging.getLogger(__name__)


def _informative(value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        stripped = value.strip()
        return bool(stripped) and stripped.lower() != UNKNOWN.lower()
    return True


def ensure_default_specifics(specifics: Optional[dict[str, str]]) -> dict[str, str]:
    """Every default key present; the sentinel only where nothing was ever supplied."""
    merged = dict(specifics or {})
    for key in DEFAULT_SPECIFIC_KEYS:
        if not _informative(merged.get(key)):
            merged[key] = UNKNOWN
    return merged


def from_identification(ident: Identification) -> AnalysisResult:
    """The provisional result, built from identification alone."""
    specifics = {}
    if ident.barcode:
        specifics["UPC"] = ident.barcode
    result = AnalysisResult(
        title=clean_title(ident.title) or ident.title,
        search_query=ident.search_query,
        confidence=ident.confidence,
        specifics=ensure_default_specifics(specifics),
        sources=list(ident.sources),
        barcode=ident.barcode,
        is_generic=ident.is_generic,
    )
    if _informative(ident.condition):
        result.condition = ident.condition.upper()
    return result


def merge(base: AnalysisResult, patch: Optional[PartialResult]) -> AnalysisResult:
    """Return a new result with `patch` applied on top of `base`."""
    merged = dataclasses.replace(base, specifics=dict(base.specifics), sources=list(base.sources))
    if patch is None:
        merged.specifics = ensure_default_specifics(merged.specifics)
        return merged

    # Title / query
    new_title = clean_title(patch.title) if _informative(patch.title) else ""
    new_query = patch.search_query.strip() if _informative(patch.search_query) else ""
    title_changed = False
    if new_title and new_title != merged.title:
        candidate_query = new_query or new_title
        if is_generic(new_title, candidate_query) and not merged.is_generic:
            logger.debug("Ignoring generic title '%s' over '%s'", new_title, merged.title)
            # The query belongs to the rejected title
            new_query = ""
        else:
            merged.title = new_title
            title_changed = True

    if new_query:
        merged.search_query = new_query
    elif title_changed:
        merged.search_query = merged.title

    if title_changed or new_query:
        merged.is_generic = is_generic(merged.title, merged.search_query)
        merged.confidence = GENERIC_CONFIDENCE if merged.is_generic else RESOLVED_CONFIDENCE

    # Specifics
    for key, value in (patch.specifics or {}).items():
        if _informative(value):
            merged.specifics[str(key)] = str(value).strip()

    # Scalars
    if _informative(patch.price_estimate):
        merged.price_estimate = round(float(patch.price_estimate), 2)
    if _informative(patch.shipping_estimate):
        merged.shipping_estimate = round(float(patch.shipping_estimate), 2)
    if _informative(patch.weight_estimate):
        merged.weight_estimate = patch.weight_estimate.strip()
    if _informative(patch.description):
        merged.description = patch.description.strip()
    if _informative(patch.condition):
        merged.condition = patch.condition.strip().upper()
    if patch.market_stats is not None:
        merged.market_stats = patch.market_stats

    merged.specifics = ensure_default_specifics(merged.specifics)
    return merged


def apply_fallbacks(result: AnalysisResult, default_shipping: Optional[float] = None) -> AnalysisResult:
    """
    Policy values for estimates whose source stage never answered.

    price_estimate falls back to the average sold price from market research;
    shipping_estimate falls back to DEFAULT_SHIPPING_ESTIMATE.  Supplied
    values are never replaced.
    """
    if default_shipping is None:
        default_shipping = config.DEFAULT_SHIPPING_ESTIMATE
    filled = dataclasses.replace(result, specifics=dict(result.specifics), sources=list(result.sources))

    stats = filled.market_stats
    if not _informative(filled.price_estimate) and stats is not None and _informative(stats.average_sold_price):
        filled.price_estimate = round(float(stats.average_sold_price), 2)
    if not _informative(filled.shipping_estimate) and _informative(default_shipping):
        filled.shipping_estimate = round(float(default_shipping), 2)
    return filled


# ── Publishing ────────────────────────────────────────────────────────────────

@dataclass
class ScanUpdate:
    session_id: str
    phase: ScanPhase
    result: AnalysisResult
    background_active: bool = False
    final: bool = False


Listener = Callable[[ScanUpdate], None]


class ResultPublisher:
    """Fan-out of ScanUpdates to synchronous listeners (UI, CLI, tests)."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._last_fields: dict[str, set[str]] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def forget(self, session_id: str) -> None:
        self._last_fields.pop(session_id, None)

    def publish(self, update: ScanUpdate) -> None:
        fields = update.result.populated_fields()
        previous = self._last_fields.get(update.session_id, set())
        lost = previous - fields
        if lost:
            logger.warning(
                "Session %s: publish drops previously shown fields %s",
                update.session_id, sorted(lost),
            )
        self._last_fields[update.session_id] = fields | previous

        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as exc:
                logger.error("Listener %r failed: %s", listener, exc)
