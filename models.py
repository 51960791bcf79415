"""
models.py — canonical home of the scan data model.

Stage modules, the merger and the supervisor all import their types from
here; collaborators (providers, search backends) return these same types.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

from search_backends.base import Comp

# Title shown while nothing has been identified yet, and the fallback when
# identification fails or times out.
FALLBACK_TITLE = "Scanning..."

# Placeholder for any item specific the recognizer did not supply
UNKNOWN = "Unknown"

DEFAULT_SPECIFIC_KEYS: tuple[str, ...] = ("Brand", "Model", "MPN", "Type", "UPC")

GENERIC_CONFIDENCE  = 30
RESOLVED_CONFIDENCE = 80

PLACEHOLDER_DESCRIPTION = ""


class ScanPhase(str, enum.Enum):
    IDLE                 = "idle"
    SCANNING             = "scanning"
    IDENTIFYING          = "identifying"
    BACKGROUND_ENRICHING = "background_enriching"
    COMPLETE             = "complete"
    FAILED               = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanPhase.COMPLETE, ScanPhase.FAILED)


@dataclass
class MarketStats:
    sold_count: int = 0
    active_count: int = 0
    sell_through_rate: float = 0.0
    active_comps: list[Comp] = field(default_factory=list)
    sold_comps: list[Comp] = field(default_factory=list)
    average_sold_price: float = 0.0
    average_active_price: float = 0.0
    is_estimated: bool = False          # sold comps inferred from active listings

    @property
    def market_status(self) -> str:
        if self.sell_through_rate >= 50:
            return "Hot"
        if self.sell_through_rate >= 20:
            return "Steady"
        return "Slow"


@dataclass
class Identification:
    """Coarse result of the identification stage."""
    title: str
    search_query: str
    sources: list[dict] = field(default_factory=list)   # [{"title": ..., "uri": ...}]
    identified: bool = True             # recognizer's own verdict
    condition: Optional[str] = None
    barcode: Optional[str] = None
    provider_name: str = ""
    latency_ms: int = 0
    cost_usd: float = 0.0

    # Filled in by the identification stage
    is_generic: bool = False
    confidence: int = RESOLVED_CONFIDENCE

    @property
    def quality_score(self) -> float:
        """Ranking score used when several providers answer in parallel."""
        if not self.identified:
            return 0.1
        return (
            (1 if self.title and self.title != FALLBACK_TITLE else 0)
            + (1 if len(self.search_query) > 3 else 0)
            + 0.2 * min(len(self.sources), 5) / 5
        )


@dataclass
class PartialResult:
    """
    A patch produced by one stage.  Any field may be None ("not supplied");
    an all-None patch means "no new information", never failure.
    """
    title: Optional[str] = None
    search_query: Optional[str] = None
    specifics: Optional[dict[str, str]] = None
    price_estimate: Optional[float] = None
    shipping_estimate: Optional[float] = None
    weight_estimate: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
    market_stats: Optional[MarketStats] = None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)


@dataclass
class AnalysisResult:
    """The progressively filled record shown to the user."""
    title: str = FALLBACK_TITLE
    search_query: str = ""
    confidence: int = GENERIC_CONFIDENCE
    specifics: dict[str, str] = field(default_factory=dict)
    price_estimate: float = 0.0
    shipping_estimate: float = 0.0
    weight_estimate: str = ""
    market_stats: Optional[MarketStats] = None
    description: str = PLACEHOLDER_DESCRIPTION
    condition: str = "USED"
    sources: list[dict] = field(default_factory=list)
    barcode: Optional[str] = None
    is_generic: bool = True

    def populated_fields(self) -> set[str]:
        """Names of fields holding something other than their default value."""
        defaults = AnalysisResult()
        populated = set()
        for name in ("title", "search_query", "price_estimate", "shipping_estimate",
                     "weight_estimate", "market_stats", "description", "barcode"):
            if getattr(self, name) != getattr(defaults, name):
                populated.add(name)
        for key, value in self.specifics.items():
            if value and value != UNKNOWN:
                populated.add(f"specifics.{key}")
        return populated


@dataclass
class CaptureSession:
    """The unit of work for one scan; only the supervisor mutates it."""
    session_id: str
    raw_image: Optional[bytes] = None
    scanned_code: Optional[str] = None
    phase: ScanPhase = ScanPhase.IDLE
    provisional_result: Optional[AnalysisResult] = None
    final_result: Optional[AnalysisResult] = None
    background_active: bool = False
    live_result: AnalysisResult = field(default_factory=AnalysisResult)

    _processed_image: Optional[bytes] = field(default=None, repr=False)

    @property
    def processed_image(self) -> Optional[bytes]:
        return self._processed_image

    @processed_image.setter
    def processed_image(self, value: bytes) -> None:
        if self._processed_image is not None:
            raise RuntimeError(f"Session {self.session_id}: processed image already set")
        self._processed_image = value

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal
