"""
OpenAI provider — supports gpt-4o and gpt-4o-mini.

Pricing (as of early 2025):
  gpt-4o:       $5.00 / 1M input tokens,  $15.00 / 1M output tokens
                + image tiles: each 512×512 tile = 170 tokens (~$0.00085/tile)
                A typical 720px product photo ≈ 765 input tokens for vision
  gpt-4o-mini:  $0.15 / 1M input tokens,  $0.60 / 1M output tokens
                Image tiles same count but much cheaper per token
"""
from __future__ import annotations

import base64
import time
import logging
from typing import Optional

from openai import AsyncOpenAI

from image_processor import detect_mime
from providers.base import ProviderReply, VisionProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.name = "openai"
        self.model_id = model
        self._client = AsyncOpenAI(api_key=api_key)

        # Pricing per 1k tokens
        _pricing = {
            "gpt-4o":      (0.005,  0.015),
            "gpt-4o-mini": (0.00015, 0.0006),
        }
        self.cost_per_1k_input_tokens, self.cost_per_1k_output_tokens = _pricing.get(
            model, (0.005, 0.015)
        )
        # High-detail image processing: ~765 tokens for a typical product photo
        self.cost_per_image = 765 / 1000 * self.cost_per_1k_input_tokens

    async def complete(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        system: Optional[str] = None,
        grounded: bool = False,
    ) -> ProviderReply:
        # grounded is ignored: chat completions have no built-in web search
        content: list[dict] = []
        if image_bytes:
            b64 = base64.b64encode(image_bytes).decode()
            content.append({
                "type": "image_url",
                "image_url": {
                    "url": f"data:{detect_mime(image_bytes)};base64,{b64}",
                    "detail": "high",
                },
            })
        content.append({"type": "text", "text": prompt})

        messages: list[dict] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})

        t0 = time.monotonic()
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=1024,
            temperature=0,
            messages=messages,
        )
        latency_ms = int((time.monotonic() - t0) * 1000)

        raw = response.choices[0].message.content or ""
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 800
        output_tokens = usage.completion_tokens if usage else 150

        return ProviderReply(
            provider_name=self.full_name,
            model_id=self.model_id,
            text=raw,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.estimate_cost(input_tokens, output_tokens, with_image=bool(image_bytes)),
        )
