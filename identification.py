"""
identification.py — first pipeline stage: photo (or scanned code) → title + query.

The stage never raises.  A timeout or provider error yields the fallback
record so the scan can always move on to the background phase.
"""
from __future__ import annotations

import logging
from typing import Optional

import config
from models import (
    FALLBACK_TITLE,
    GENERIC_CONFIDENCE,
    RESOLVED_CONFIDENCE,
    Identification,
)
from timeouts import with_deadline

logger = logging.getLogger(__name__)

# Titles containing any of these are placeholder answers, not identifications
GENERIC_PHRASES: tuple[str, ...] = (
    "item detected",
    "unknown item",
    "unidentified",
    "unable to identify",
    "missing api key",
    "ai response",
)


def fallback_identification(scanned_code: Optional[str] = None) -> Identification:
    ident = Identification(
        title=FALLBACK_TITLE,
        search_query="",
        identified=False,
        barcode=scanned_code,
    )
    return classify(ident)


def is_generic(title: str, search_query: str, identified: bool = True) -> bool:
    if not identified or not search_query.strip():
        return True
    if title.strip() == FALLBACK_TITLE:
        return True
    lowered = title.lower()
    return any(phrase in lowered for phrase in GENERIC_PHRASES)


def classify(ident: Identification) -> Identification:
    """Assign the fixed confidence band for this identification."""
    ident.is_generic = is_generic(ident.title, ident.search_query, ident.identified)
    ident.confidence = GENERIC_CONFIDENCE if ident.is_generic else RESOLVED_CONFIDENCE
    return ident


async def identify(
    recognizer,
    image: bytes,
    scanned_code: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Identification:
    """
    Identify the item in `image`.  A scanned code takes the cheaper
    code-lookup path instead of visual recognition.
    """
    timeout = config.IDENTIFY_TIMEOUT if timeout is None else timeout
    fallback = fallback_identification(scanned_code)

    label = "identify:code" if scanned_code else "identify:vision"
    try:
        if scanned_code:
            operation = recognizer.lookup_code(scanned_code)
        else:
            operation = recognizer.identify(image)
    except Exception as exc:
        logger.error("[%s] failed: %s", label, exc)
        return fallback

    ident = await with_deadline(operation, timeout, fallback=fallback, label=label)
    if ident is fallback:
        return fallback

    if not ident.title:
        logger.warning("[%s] recognizer returned no title — using fallback", label)
        return fallback
    if scanned_code and not ident.barcode:
        ident.barcode = scanned_code

    classify(ident)
    logger.info(
        "Identified '%s' (query='%s', confidence=%d%s)",
        ident.title, ident.search_query, ident.confidence, ", generic" if ident.is_generic else "",
    )
    return ident
