"""
deep_analysis.py — richer attributes for an already identified item.

Degrades softly: a timeout or any error yields an empty patch, which the
merger treats as "no new information".
"""
from __future__ import annotations

import logging
from typing import Optional

import config
from models import PartialResult
from timeouts import with_deadline

logger = logging.getLogger(__name__)


async def enrich(
    recognizer,
    image: bytes,
    current_title: str,
    timeout: Optional[float] = None,
) -> PartialResult:
    timeout = config.ENRICH_TIMEOUT if timeout is None else timeout
    try:
        patch = await with_deadline(
            recognizer.enrich(image, current_title),
            timeout,
            fallback=PartialResult(),
            label="enrich",
        )
    except Exception as exc:
        # recognizer.enrich() itself blew up before returning an awaitable
        logger.error("[enrich] failed for '%s': %s", current_title, exc)
        return PartialResult()

    if not isinstance(patch, PartialResult):
        logger.error("[enrich] unexpected result type %s — ignoring", type(patch).__name__)
        return PartialResult()
    if patch.is_empty():
        logger.info("[enrich] no new information for '%s'", current_title)
    return patch
