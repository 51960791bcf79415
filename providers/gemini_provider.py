"""
Google Gemini provider — uses the google-genai SDK.

Gemini is the default recognizer: it is cheap, fast on images, and can ground
its answer with Google Search, which is what fills `sources` on a result.

Pricing (as of mid 2025):
  gemini-2.5-flash:      $0.30  / 1M input,  $2.50 / 1M output
  gemini-2.0-flash:      $0.10  / 1M input,  $0.40 / 1M output
                          Images: $0.00004 per image
  gemini-2.0-flash-lite: $0.075 / 1M input,  $0.30 / 1M output
                          Images: $0.00002 per image
"""
from __future__ import annotations

import time
import logging
from typing import Optional

from google import genai
from google.genai import types as genai_types

from image_processor import detect_mime
from providers.base import ProviderReply, VisionProvider

logger = logging.getLogger(__name__)

_PRICING: dict[str, tuple[float, float, float]] = {
    # model_id: ($/1k_input_tokens, $/1k_output_tokens, $/image)
    "gemini-2.5-flash":      (0.0003,   0.0025,  0.00008),
    "gemini-2.0-flash":      (0.0001,   0.0004,  0.00004),
    "gemini-2.0-flash-lite": (0.000075, 0.0003,  0.00002),
}


def _grounding_sources(response) -> list[dict]:
    """Pull web links out of the grounding metadata, if the model searched."""
    sources: list[dict] = []
    try:
        chunks = response.candidates[0].grounding_metadata.grounding_chunks or []
    except (AttributeError, IndexError, TypeError):
        return sources
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        if web is not None and getattr(web, "uri", None):
            sources.append({"title": getattr(web, "title", None) or "Source", "uri": web.uri})
    return sources


class GeminiProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash"):
        self.name     = "google"
        self.model_id = model
        self._client  = genai.Client(api_key=api_key)

        rates = _PRICING.get(model, _PRICING["gemini-2.5-flash"])
        self.cost_per_1k_input_tokens  = rates[0]
        self.cost_per_1k_output_tokens = rates[1]
        self.cost_per_image            = rates[2]

    async def complete(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        system: Optional[str] = None,
        grounded: bool = False,
    ) -> ProviderReply:
        contents: list = []
        if image_bytes:
            contents.append(
                genai_types.Part.from_bytes(data=image_bytes, mime_type=detect_mime(image_bytes))
            )
        contents.append(prompt)

        gen_config = genai_types.GenerateContentConfig(
            system_instruction=system,
            temperature=0,
            # JSON mode is not allowed together with tools, so parsing stays lenient
            tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())] if grounded else None,
        )

        t0 = time.monotonic()
        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=contents,
            config=gen_config,
        )
        latency_ms = int((time.monotonic() - t0) * 1000)

        usage         = response.usage_metadata
        input_tokens  = getattr(usage, "prompt_token_count", None) or 800
        output_tokens = getattr(usage, "candidates_token_count", None) or 150

        return ProviderReply(
            provider_name = self.full_name,
            model_id      = self.model_id,
            text          = response.text or "",
            latency_ms    = latency_ms,
            input_tokens  = input_tokens,
            output_tokens = output_tokens,
            cost_usd      = self.estimate_cost(input_tokens, output_tokens, with_image=bool(image_bytes)),
            sources       = _grounding_sources(response),
        )
