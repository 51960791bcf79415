"""
describer.py — plain-text listing descriptions.

Models like to answer in markdown, HTML or even JSON no matter what the
prompt says, so every answer goes through clean_description().
"""
from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

EBAY_PROMPT = """TASK: Write a plain text listing description for eBay.
ITEM: "{title}"
CONDITION: "{notes}"

CRITICAL RULES:
1. OUTPUT FORMAT: RAW PLAIN TEXT ONLY. No JSON, no Markdown (no **bold**, no # headers).
2. TONE: Strictly factual and objective. No marketing fluff ("Beautiful", "Stunning").
3. FORMATTING: Simple newlines for spacing, dashes (-) for lists.
4. CONTENT:
   {title}

   Details:
   - Brand: [Brand]
   - Model: [Model]
   - [Spec 1]
   - [Spec 2]

   Condition:
   {condition}

   Shipping:
   Ships via USPS Ground Advantage."""

FACEBOOK_PROMPT = (
    'Write a short, factual Facebook Marketplace listing for "{title}". '
    'Condition: "{notes}". Price: Firm. No fluff. Plain text only.'
)

DEFAULT_CONDITION_NOTE = "Pre-owned. See photos for details."

_FENCE_RE = re.compile(r"```(?:html|text|json|markdown)?", re.IGNORECASE)
_TAG_RE   = re.compile(r"<[^>]*>")


def build_prompt(title: str, notes: str = "", platform: str = "EBAY") -> str:
    if platform.upper() == "FACEBOOK":
        return FACEBOOK_PROMPT.format(title=title, notes=notes)
    return EBAY_PROMPT.format(title=title, notes=notes, condition=notes or DEFAULT_CONDITION_NOTE)


def clean_description(text: str) -> str:
    """Reduce a model answer to plain text."""
    text = (text or "").strip()

    # The model ignored us and returned JSON; pull the description out of it
    if text.startswith("{") and text.endswith("}"):
        try:
            data = json.loads(text)
            if isinstance(data, dict):
                text = str(data.get("description") or data.get("content") or text)
        except json.JSONDecodeError:
            pass

    text = _FENCE_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = text.replace("**", "")
    return text.strip()


class ListingDescriber:
    """Describer collaborator: generate(title, notes, platform) -> text."""

    def __init__(self, recognizer):
        self._recognizer = recognizer

    async def generate(self, title: str, notes: str = "", platform: str = "EBAY") -> str:
        raw = await self._recognizer.generate_text(build_prompt(title, notes, platform))
        text = clean_description(raw)
        logger.info("Generated %s description for '%s' (%d chars)", platform, title, len(text))
        return text
