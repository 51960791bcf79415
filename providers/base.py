"""
Shared prompts, reply type and base class for all recognizer providers.

A provider only has to implement complete(): one prompt (optionally with an
image) in, raw text out.  identify / lookup_code / enrich / generate_text are
built on top of it here so every provider parses answers the same way.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from models import Identification, PartialResult

logger = logging.getLogger(__name__)

# ── Prompts (shared across all providers) ─────────────────────────────────────

SYSTEM_PROMPT = """You are an expert reseller (eBay / flipper) identifying items from photos.
Return ONLY a valid JSON object — no markdown, no prose."""

IDENTIFY_PROMPT = """Identify the specific item in this photo.

JSON schema:
{
  "item_title":   "search-optimised title, max 10 words: Brand + Model + key variant/part number",
  "search_query": "comp search query, max 5 words: Brand + Model + MPN only",
  "identified":   true if you recognise the specific item, false if you can only guess the category,
  "condition":    "NEW" | "USED"
}

Rules:
- No filler words ("Rare", "Vintage", "Look!"), no emojis.
- search_query: no colours, adjectives or generic words like "toy" or "electronics".
- Default condition to USED if unsure.
"""

CODE_LOOKUP_PROMPT = """You are a barcode lookup tool.
TARGET CODE: "{code}"

Identify the exact product this code belongs to (Brand + Model + Variant).
Search the raw digits only — do not add words like "item" or "toy".

Return JSON:
{{"item_title": "string", "search_query": "string", "identified": true|false, "condition": "NEW"|"USED"}}
"""

ENRICH_PROMPT = """The item in this photo has been identified as: "{title}".

Task:
1. Refine the title (max 10 words, Brand + Model + key variant). Keep it if already precise.
2. Create a comp search query (max 5 words, Brand + Model + MPN).
3. Determine condition (NEW if sealed/boxed, otherwise USED).
4. Estimate the current sold price in USD for that condition.
5. Estimate shipping weight including packaging, formatted "X lb Y oz" or "Z oz".
6. Estimate USPS Ground Advantage shipping cost for that weight.
7. Extract item specifics: Brand, Model, MPN, UPC, Type, CountryRegionOfManufacture.
   Use "Unknown" if not found.

Return JSON:
{{
  "item_title": "string",
  "search_query": "string",
  "condition": "NEW" | "USED",
  "estimated_sold_price": number,
  "estimated_shipping_cost": number,
  "estimated_weight": "string",
  "item_specifics": {{"Brand": "string", "Model": "string", "MPN": "string",
                      "UPC": "string", "Type": "string", "CountryRegionOfManufacture": "string"}},
  "description": "string"
}}
"""


# ── Shared reply type ─────────────────────────────────────────────────────────

@dataclass
class ProviderReply:
    """Raw answer from a single provider call."""
    provider_name: str          # e.g. "google/gemini-2.5-flash"
    model_id: str
    text: str
    latency_ms: int             # wall-clock time for this call
    input_tokens: int
    output_tokens: int
    cost_usd: float             # estimated cost
    sources: list[dict] = field(default_factory=list)   # grounding links, if any

    @property
    def cost_str(self) -> str:
        if self.cost_usd < 0.001:
            return f"${self.cost_usd * 1000:.3f}m"   # show in milli-dollars
        return f"${self.cost_usd:.4f}"


def parse_json_response(raw: str, provider_name: str) -> dict:
    """
    Parse JSON from a model response, handling markdown fences and prose
    around the object gracefully.
    Raises ValueError on parse failure.
    """
    text = (raw or "").strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    # Isolate the outermost object if the model wrapped it in prose
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        text = text[first:last + 1]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, (raw or "")[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"[{provider_name}] expected a JSON object, got {type(data).__name__}")
    return data


def _number(value) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^\d.]", "", value.replace(",", ""))
        try:
            return float(cleaned) if cleaned else None
        except ValueError:
            return None
    return None


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def identification_from_json(data: dict, reply: ProviderReply, code: Optional[str] = None) -> Identification:
    title = _text(data.get("item_title")) or ""
    return Identification(
        title=title,
        search_query=_text(data.get("search_query")) or "",
        sources=reply.sources,
        identified=bool(data.get("identified", bool(title))),
        condition=_text(data.get("condition")),
        barcode=code,
        provider_name=reply.provider_name,
        latency_ms=reply.latency_ms,
        cost_usd=reply.cost_usd,
    )


def partial_from_json(data: dict) -> PartialResult:
    specifics = data.get("item_specifics")
    if isinstance(specifics, dict):
        specifics = {str(k): str(v).strip() for k, v in specifics.items() if v is not None}
    else:
        specifics = None
    condition = _text(data.get("condition"))
    weight = data.get("estimated_weight")
    return PartialResult(
        title=_text(data.get("item_title")),
        search_query=_text(data.get("search_query")),
        specifics=specifics or None,
        price_estimate=_number(data.get("estimated_sold_price")),
        shipping_estimate=_number(data.get("estimated_shipping_cost")),
        weight_estimate=_text(weight) if weight is not None else None,
        description=_text(data.get("description")),
        condition=condition.upper() if condition else None,
    )


# ── Abstract base ─────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all recognizer providers must implement."""

    name: str           # e.g. "openai"
    model_id: str       # e.g. "gpt-4o-mini"
    cost_per_1k_input_tokens: float
    cost_per_1k_output_tokens: float
    # Extra per-image cost for vision (input image processing flat fee or per-tile)
    cost_per_image: float = 0.0

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        system: Optional[str] = None,
        grounded: bool = False,
    ) -> ProviderReply:
        """Send one prompt (with an optional image) and return the raw reply."""
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    def estimate_cost(self, input_tokens: int, output_tokens: int, with_image: bool = True) -> float:
        return (
            (self.cost_per_image if with_image else 0.0)
            + input_tokens / 1000 * self.cost_per_1k_input_tokens
            + output_tokens / 1000 * self.cost_per_1k_output_tokens
        )

    async def identify(self, image_bytes: bytes) -> Identification:
        reply = await self.complete(
            IDENTIFY_PROMPT, image_bytes, system=SYSTEM_PROMPT, grounded=True,
        )
        data = parse_json_response(reply.text, self.full_name)
        return identification_from_json(data, reply)

    async def lookup_code(self, code: str) -> Identification:
        reply = await self.complete(
            CODE_LOOKUP_PROMPT.format(code=code), system=SYSTEM_PROMPT, grounded=True,
        )
        data = parse_json_response(reply.text, self.full_name)
        ident = identification_from_json(data, reply, code=code)
        # A bare code is always a usable query for comps
        if not ident.search_query:
            ident.search_query = code
        return ident

    async def enrich(self, image_bytes: bytes, title: str) -> PartialResult:
        reply = await self.complete(
            ENRICH_PROMPT.format(title=title), image_bytes, system=SYSTEM_PROMPT, grounded=True,
        )
        data = parse_json_response(reply.text, self.full_name)
        logger.info("[%s] enrich OK — cost=%s latency=%dms", self.full_name, reply.cost_str, reply.latency_ms)
        return partial_from_json(data)

    async def generate_text(self, prompt: str) -> str:
        reply = await self.complete(prompt)
        return reply.text
