"""
Central configuration — reads from .env file.

Every setting is a plain module attribute so code reading config.X always sees
the current value (tests monkeypatch these directly).  Nothing here is
required: a missing provider key just means that provider is not loaded, and
a missing marketplace key means market research degrades to empty comps.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


# ── AI recognizer providers ───────────────────────────────────────────────────
# Add keys for whichever providers you have access to.
# The pipeline automatically uses only the providers whose keys are present.
GOOGLE_API_KEY: str | None    = os.getenv("GOOGLE_API_KEY")
OPENAI_API_KEY: str | None    = os.getenv("OPENAI_API_KEY")
ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")

# Vision mode: how to use multiple providers for identification:
#   best      → run all providers in parallel, keep the highest-scoring answer
#   cheapest  → always use the cheapest available provider (default)
#   single:google/gemini-2.5-flash  → force a specific provider
VISION_MODE: str = os.getenv("VISION_MODE", "cheapest")

# ── Marketplace search ────────────────────────────────────────────────────────
# auto  → ebay if app credentials are present, otherwise the hosted comps API
# ebay  → eBay Browse API (active) + Finding API (sold), app-token auth
# proxy → hosted comps endpoint, e.g. https://comps.example.com/api/ebay/search-comps
MARKET_BACKEND: str = os.getenv("MARKET_BACKEND", "auto")

EBAY_APP_ID: str | None  = os.getenv("EBAY_APP_ID")
EBAY_CERT_ID: str | None = os.getenv("EBAY_CERT_ID")
EBAY_MARKETPLACE: str    = os.getenv("EBAY_MARKETPLACE", "EBAY_US")

COMPS_API_BASE_URL: str | None = os.getenv("COMPS_API_BASE_URL", "").strip() or None

# How many comparables each SOLD / ACTIVE search returns
MAX_COMPS: int = int(os.getenv("MAX_COMPS", "10"))

# ── Object storage (Supabase Storage) ─────────────────────────────────────────
# Leave blank to keep scans local only; uploads are best-effort anyway.
SUPABASE_URL: str | None = os.getenv("SUPABASE_URL", "").strip() or None
SUPABASE_KEY: str | None = os.getenv("SUPABASE_KEY")
SUPABASE_BUCKET: str     = os.getenv("SUPABASE_BUCKET", "scans")

# ── Pipeline timing (seconds) ─────────────────────────────────────────────────
PREPROCESS_TIMEOUT: float = _float("PREPROCESS_TIMEOUT", 3.0)
IDENTIFY_TIMEOUT: float   = _float("IDENTIFY_TIMEOUT", 15.0)
ENRICH_TIMEOUT: float     = _float("ENRICH_TIMEOUT", 25.0)
MARKET_TIMEOUT: float     = _float("MARKET_TIMEOUT", 20.0)
# Outer ceiling from the start of identification to a forced "complete"
WATCHDOG_TIMEOUT: float   = _float("WATCHDOG_TIMEOUT", 45.0)

# ── Frame pre-processing ──────────────────────────────────────────────────────
IMAGE_MAX_EDGE: int = int(os.getenv("IMAGE_MAX_EDGE", "720"))
IMAGE_QUALITY: int  = int(os.getenv("IMAGE_QUALITY", "50"))

# ── Listing defaults ──────────────────────────────────────────────────────────
# EBAY | FACEBOOK: selects the description prompt
LISTING_PLATFORM: str = os.getenv("LISTING_PLATFORM", "EBAY").upper()
ITEM_CONDITION: str   = os.getenv("ITEM_CONDITION", "USED").upper()
DEFAULT_SHIPPING_ESTIMATE: float = _float("DEFAULT_SHIPPING_ESTIMATE", 0.0)

# Show per-request cost info in the CLI output (useful during development)
SHOW_COST_INFO: bool = os.getenv("SHOW_COST_INFO", "true").lower() == "true"

# Log file lives here
DATA_DIR: str = os.getenv("DATA_DIR", "data")
