"""
Provider Manager — initialises the enabled recognizer providers and exposes
them to the pipeline as one Recognizer.

Keys come from config (.env).  The provider cache is built on first use and
can be reset by assigning `_providers = {}`.

Vision modes (identification only — enrichment and text generation always
use the preferred single provider):
  best      — run all enabled providers in parallel, keep the highest quality_score
  cheapest  — run only the cheapest available provider
  single:X  — run only provider named X (e.g. "single:google/gemini-2.5-flash")

Per-model enable/disable via environment variables (all default to true
unless noted):
  ENABLE_GEMINI_2_5_FLASH, ENABLE_GEMINI_2_0_FLASH
  ENABLE_GPT_4O_MINI, ENABLE_GPT_4O (opt-in)
  ENABLE_CLAUDE_3_5_HAIKU, ENABLE_CLAUDE_3_5_SONNET (opt-in)
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import config
from models import Identification, PartialResult
from providers.base import VisionProvider

logger = logging.getLogger(__name__)

# Module-level cache
_providers: dict[str, VisionProvider] = {}


def _model_enabled(env_key: str, default: bool = True) -> bool:
    """
    Check whether a specific model is enabled via an environment variable.
    Default is True for most models; pass default=False to require explicit opt-in.
    """
    raw = os.getenv(env_key, "true" if default else "false")
    return raw.strip().lower() not in ("false", "0", "no")


def _build_providers() -> dict[str, VisionProvider]:
    """
    Instantiate every provider whose API key is configured AND whose
    per-model toggle is enabled.  Returns dict keyed by full_name.
    """
    providers: dict[str, VisionProvider] = {}

    # ── Google ────────────────────────────────────────────────────────────────
    if config.GOOGLE_API_KEY:
        from providers.gemini_provider import GeminiProvider
        for model, env_flag, default_on in [
            ("gemini-2.5-flash", "ENABLE_GEMINI_2_5_FLASH", True),
            ("gemini-2.0-flash", "ENABLE_GEMINI_2_0_FLASH", True),
        ]:
            if _model_enabled(env_flag, default=default_on):
                p = GeminiProvider(config.GOOGLE_API_KEY, model)
                providers[p.full_name] = p
                logger.info("Loaded provider: %s", p.full_name)
            else:
                logger.info("Skipped provider google/%s (disabled by %s)", model, env_flag)

    # ── OpenAI ────────────────────────────────────────────────────────────────
    if config.OPENAI_API_KEY:
        from providers.openai_provider import OpenAIProvider
        for model, env_flag, default_on in [
            ("gpt-4o-mini", "ENABLE_GPT_4O_MINI", True),
            ("gpt-4o",      "ENABLE_GPT_4O",      False),
        ]:
            if _model_enabled(env_flag, default=default_on):
                p = OpenAIProvider(config.OPENAI_API_KEY, model)
                providers[p.full_name] = p
                logger.info("Loaded provider: %s", p.full_name)
            else:
                logger.info("Skipped provider openai/%s (disabled by %s)", model, env_flag)

    # ── Anthropic ─────────────────────────────────────────────────────────────
    if config.ANTHROPIC_API_KEY:
        from providers.anthropic_provider import AnthropicProvider
        for model, env_flag, default_on in [
            ("claude-3-5-haiku-20241022",  "ENABLE_CLAUDE_3_5_HAIKU",  True),
            ("claude-3-5-sonnet-20241022", "ENABLE_CLAUDE_3_5_SONNET", False),
        ]:
            if _model_enabled(env_flag, default=default_on):
                p = AnthropicProvider(config.ANTHROPIC_API_KEY, model)
                providers[p.full_name] = p
                logger.info("Loaded provider: %s", p.full_name)
            else:
                logger.info("Skipped provider anthropic/%s (disabled by %s)", model, env_flag)

    if not providers:
        raise RuntimeError(
            "No recognizer providers available.\n"
            "Set at least one key in .env:\n"
            "  • GOOGLE_API_KEY\n"
            "  • OPENAI_API_KEY\n"
            "  • ANTHROPIC_API_KEY"
        )

    return providers


def get_providers() -> dict[str, VisionProvider]:
    global _providers
    if not _providers:
        _providers = _build_providers()
    return _providers


def cheapest_provider() -> VisionProvider:
    providers = get_providers()
    return min(
        providers.values(),
        key=lambda p: p.cost_per_image + p.cost_per_1k_input_tokens * 0.8,
    )


class ProviderRecognizer:
    """
    The Recognizer the pipeline talks to: identify / lookup_code / enrich /
    generate_text, backed by whichever providers are configured.
    """

    def __init__(self, mode: Optional[str] = None):
        self.mode = mode or config.VISION_MODE

    def _targets(self) -> list[VisionProvider]:
        providers = get_providers()
        if self.mode == "best":
            return list(providers.values())
        return [self.preferred()]

    def preferred(self) -> VisionProvider:
        """The single provider used for enrichment and text generation."""
        providers = get_providers()
        if self.mode.startswith("single:"):
            name = self.mode[len("single:"):]
            if name not in providers:
                available = ", ".join(providers)
                raise ValueError(f"Provider '{name}' not available. Available: {available}")
            return providers[name]
        return cheapest_provider()

    async def identify(self, image_bytes: bytes) -> Identification:
        targets = self._targets()

        async def _safe_run(provider: VisionProvider) -> Optional[Identification]:
            try:
                result = await provider.identify(image_bytes)
                logger.info(
                    "[%s] identify OK — '%s' identified=%s latency=%dms",
                    provider.full_name, result.title, result.identified, result.latency_ms,
                )
                return result
            except Exception as exc:
                logger.error("[%s] identify failed: %s", provider.full_name, exc)
                return None

        raw_results = await asyncio.gather(*[_safe_run(p) for p in targets])
        all_results = [r for r in raw_results if r is not None]

        if not all_results:
            raise RuntimeError("All recognizer providers failed to identify the item.")

        return max(all_results, key=lambda r: r.quality_score)

    async def lookup_code(self, code: str) -> Identification:
        return await self.preferred().lookup_code(code)

    async def enrich(self, image_bytes: bytes, title: str) -> PartialResult:
        return await self.preferred().enrich(image_bytes, title)

    async def generate_text(self, prompt: str) -> str:
        return await self.preferred().generate_text(prompt)
