"""
style.py — text rendering for scan updates.

Design language:
  • Structured cards with consistent icons
  • Unicode box-drawing dividers
  • Clear visual hierarchy: header → body → footer

Everything the command line prints about a scan goes through this module.
"""
from __future__ import annotations

from typing import Optional

from models import UNKNOWN, AnalysisResult, MarketStats, ScanPhase
from profit import calculate
from search_backends.base import Comp

# ── Visual constants ──────────────────────────────────────────────────────────

DIV   = "━━━━━━━━━━━━━━━━━━━━━━━━━━"    # thick divider
SDIV  = "┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄"    # subtle divider

PHASE_LABELS = {
    ScanPhase.IDLE:                 "⏸  Idle",
    ScanPhase.SCANNING:             "📸 Capturing…",
    ScanPhase.IDENTIFYING:          "⠋ Identifying item…",
    ScanPhase.BACKGROUND_ENRICHING: "⠙ Researching market…",
    ScanPhase.COMPLETE:             "✅ Complete",
    ScanPhase.FAILED:               "❌ Failed",
}

MARKET_ICONS = {"Hot": "🔥", "Steady": "📈", "Slow": "🐢"}


def money(value: Optional[float]) -> str:
    if not value:
        return "—"
    return f"${value:,.2f}"


def conf_icon(confidence: int) -> str:
    return "🟢" if confidence >= 80 else "🟡" if confidence >= 50 else "🔴"


# ══════════════════════════════════════════════════════════════════════════════
# STATUS
# ══════════════════════════════════════════════════════════════════════════════

def status_line(update) -> str:
    """One line per published update."""
    label = PHASE_LABELS.get(update.phase, update.phase.value)
    busy = "  (background…)" if update.background_active else ""
    return f"{label}  {update.result.title}{busy}"


# ══════════════════════════════════════════════════════════════════════════════
# MARKET
# ══════════════════════════════════════════════════════════════════════════════

def market_summary(stats: Optional[MarketStats]) -> str:
    if stats is None:
        return "📊 Market data unavailable"
    icon = MARKET_ICONS.get(stats.market_status, "")
    estimated = "  (sold prices estimated)" if stats.is_estimated else ""
    return (
        f"📊 {icon} {stats.market_status}  ·  sell-through {stats.sell_through_rate:g}%\n"
        f"   {stats.sold_count} sold / {stats.active_count} active\n"
        f"   avg sold {money(stats.average_sold_price)}   "
        f"avg active {money(stats.average_active_price)}{estimated}"
    )


def comps_list(comps: list[Comp], heading: str, limit: int = 5) -> str:
    if not comps:
        return f"{heading}\n  ▸ none found"
    lines = [heading]
    for comp in comps[:limit]:
        sold = f"  sold {comp.date_sold[:10]}" if comp.date_sold else ""
        lines.append(f"  ▸ {money(comp.total):>10}  {comp.title[:70]}{sold}")
    if len(comps) > limit:
        lines.append(f"  … {len(comps) - limit} more")
    return "\n".join(lines)


# ══════════════════════════════════════════════════════════════════════════════
# RESULT CARD
# ══════════════════════════════════════════════════════════════════════════════

def result_card(result: AnalysisResult, show_cost: bool = True, item_cost: float = 0.0) -> str:
    specifics = "\n".join(
        f"  ▸ {key}: {value}" for key, value in result.specifics.items() if value != UNKNOWN
    ) or "  ▸ none detected"
    unknown = [key for key, value in result.specifics.items() if value == UNKNOWN]

    lines = [
        f"✨ {result.title}",
        DIV,
        f"{conf_icon(result.confidence)} Confidence: {result.confidence}   🔎 {result.search_query or '—'}",
        f"🏷️ Condition: {result.condition}",
    ]
    if result.barcode:
        lines.append(f"🔢 Code: {result.barcode}")
    lines += ["", "✦ Item specifics", specifics]
    if unknown:
        lines.append(f"  ({', '.join(unknown)}: {UNKNOWN})")

    lines += [
        "",
        f"💰 Estimate {money(result.price_estimate)}   🚚 Shipping {money(result.shipping_estimate)}"
        + (f"   ⚖️ {result.weight_estimate}" if result.weight_estimate else ""),
    ]

    stats = result.market_stats
    lines += [SDIV, market_summary(stats)]
    if stats is not None:
        lines += [
            comps_list(stats.sold_comps, "🧾 Sold comps"),
            comps_list(stats.active_comps, "🛒 Active comps"),
        ]

    if show_cost:
        sold_price = (stats.average_sold_price if stats else 0.0) or result.price_estimate
        if sold_price:
            calc = calculate(sold_price, result.shipping_estimate, item_cost)
            verdict = "✅ worth flipping" if calc.is_profitable else "⚠️ thin margin"
            lines += [
                SDIV,
                f"💸 Fees {money(calc.fees)}   Net {money(calc.net_profit)}  {verdict}",
            ]

    if result.description:
        lines += [SDIV, "📝 Description", result.description]
    if result.sources:
        lines += [SDIV] + [f"🔗 {s.get('title') or s.get('uri')}" for s in result.sources[:3]]

    lines.append(DIV)
    return "\n".join(lines)
