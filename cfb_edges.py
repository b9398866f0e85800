"""
cfb_edges.py — Model-vs-market edge, confidence tier and pick side.

    edge = model - market        (spreads in HMA frame, totals in points)

Spread: edge > 0 means the model likes the home team more than the market
does, so the pick is home; edge < 0 picks away.
Total: edge > 0 picks over, edge < 0 picks under.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Optional

from cfb_config import DEFAULT_TIER_THRESHOLDS

log = logging.getLogger(__name__)


@dataclass
class EdgeResult:
    edge:        float
    tier:        str
    pick:        str
    market_type: str

    def to_dict(self) -> Dict:
        return asdict(self)


def tier_rank(tier: Optional[str], thresholds: Dict[str, float] = None) -> int:
    """0 for the strongest tier, increasing as tiers weaken; -1 if unknown."""
    thresholds = thresholds or DEFAULT_TIER_THRESHOLDS
    ordered = sorted(thresholds, key=thresholds.get, reverse=True)
    return ordered.index(tier) if tier in ordered else -1


def meets_minimum_tier(tier: Optional[str], min_tier: Optional[str],
                       thresholds: Dict[str, float] = None) -> bool:
    if min_tier is None:
        return tier is not None
    rank = tier_rank(tier, thresholds)
    return rank >= 0 and rank <= tier_rank(min_tier, thresholds)


def assign_tier(abs_edge: float, thresholds: Dict[str, float]) -> Optional[str]:
    for tier in sorted(thresholds, key=thresholds.get, reverse=True):
        if abs_edge >= thresholds[tier]:
            return tier
    return None


def evaluate_edge(
    model: Optional[float],
    market: Optional[float],
    thresholds: Dict[str, float] = None,
    market_type: str = "spread",
) -> Optional[EdgeResult]:
    """None when either side is missing, the edge is zero, or below the lowest tier."""
    if model is None or market is None:
        return None
    if market_type not in ("spread", "total"):
        raise ValueError(f"evaluate_edge handles spread/total, got {market_type!r}")

    thresholds = thresholds or DEFAULT_TIER_THRESHOLDS
    edge = float(model) - float(market)
    tier = assign_tier(abs(edge), thresholds)
    if tier is None or edge == 0:
        return None

    if market_type == "spread":
        pick = "home" if edge > 0 else "away"
    else:
        pick = "over" if edge > 0 else "under"
    return EdgeResult(edge=edge, tier=tier, pick=pick, market_type=market_type)
