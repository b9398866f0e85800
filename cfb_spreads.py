"""
cfb_spreads.py — Spread projection and sign conventions

Every conversion between the model frame and the book frame goes through
this module.

  HMA frame   : home minus away, positive = home favored. All model math.
  Quote frame : as books print it, negative = home favored (home -7 ⇒ -7.0).

    quote_to_hma(-7.0)  ->  7.0
    hma_to_quote(7.0)   -> -7.0
"""

import logging
import math
from dataclasses import dataclass, asdict
from typing import Dict, Optional

from scipy.stats import norm

from cfb_config import SPREAD_SIGMA, ModelConfig
from cfb_errors import InvariantViolation

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# SIGN CONVENTIONS
# ═══════════════════════════════════════════════════════════════════════════════

def quote_to_hma(quote: Optional[float]) -> Optional[float]:
    if quote is None:
        return None
    return -float(quote)


def hma_to_quote(hma: Optional[float]) -> Optional[float]:
    if hma is None:
        return None
    return -float(hma)


def round_to_half(x: float) -> float:
    """Nearest 0.5, halves rounding up: 48.25 → 48.5, 48.1 → 48.0."""
    return math.floor(x * 2 + 0.5) / 2


@dataclass
class FavoriteCentric:
    favorite_team_id: str
    favorite_spread:  float     # always <= 0
    underdog_team_id: str
    underdog_spread:  float     # always >= 0

    def to_dict(self) -> Dict:
        return asdict(self)


def to_favorite_centric(hma: float, home_team_id: str, away_team_id: str) -> FavoriteCentric:
    """Display form: the favorite lays points. A pick'em lists home first."""
    line = round_to_half(abs(hma))
    if hma >= 0:
        return FavoriteCentric(home_team_id, -line, away_team_id, line)
    return FavoriteCentric(away_team_id, -line, home_team_id, line)


def check_sign_consensus(model_hma: float, market_hma: float,
                         tolerance: float, game_id: str = "") -> bool:
    """
    Raise InvariantViolation when model and market favor opposite teams and
    sit more than `tolerance` points apart. That pattern is almost always a
    flipped quote upstream, not a real opinion.
    """
    if model_hma * market_hma < 0 and abs(model_hma - market_hma) > tolerance:
        msg = (f"Sign disagreement on {game_id or 'game'}: model {model_hma:+.1f} "
               f"vs market {market_hma:+.1f} (HMA), tolerance {tolerance}")
        log.error(msg)
        raise InvariantViolation(msg)
    return True


# ═══════════════════════════════════════════════════════════════════════════════
# PROJECTION MATH
# ═══════════════════════════════════════════════════════════════════════════════

def effective_hfa(hfa_config, team_id: str, neutral_site: bool,
                  config: Optional[ModelConfig] = None) -> float:
    """
    Home-field points for `team_id` hosting. Zero at neutral sites; the
    configured base_hfa when no trained HfaConfig is supplied.
    """
    if neutral_site:
        return 0.0
    if hfa_config is None:
        return (config or ModelConfig()).base_hfa
    return hfa_config.effective_hfa(team_id)


def model_spread(home_power: float, away_power: float, hfa: float) -> float:
    return home_power - away_power + hfa


def win_probability(spread_hma: float, sigma: float = SPREAD_SIGMA) -> float:
    """P(home wins) with the final margin ~ Normal(spread, sigma)."""
    return float(norm.cdf(spread_hma / sigma))


def project_total(
    market_total: Optional[float],
    market_spread_hma: Optional[float],
    model_spread_hma: Optional[float],
    beta: float,
    max_overlay: float,
) -> Optional[float]:
    """
    Market total nudged by how far the model disagrees on the spread.
    Returns None if any input is missing or non-finite.
    """
    for v in (market_total, market_spread_hma, model_spread_hma):
        if v is None or not math.isfinite(v):
            return None
    overlay = beta * (model_spread_hma - market_spread_hma)
    overlay = max(-max_overlay, min(max_overlay, overlay))
    return market_total + overlay


@dataclass
class SpreadProjection:
    home_team_id:    str
    away_team_id:    str
    season:          int
    spread:          float      # HMA
    confidence:      float
    home_power:      float
    away_power:      float
    hfa:             float
    win_probability: float
    neutral_site:    bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


class SpreadProjector:
    """Combines stored power ratings with a published HfaConfig."""

    def __init__(self, store, hfa_config=None, model_version: str = "v1",
                 config: Optional[ModelConfig] = None):
        self.store = store
        self.hfa_config = hfa_config
        self.model_version = model_version
        self.config = config or ModelConfig()

    def _power(self, team_id: str, season: int):
        rating = self.store.get_team_season_rating(team_id, season, self.model_version)
        if rating is None:
            log.warning(
                f"No {self.model_version} rating for {team_id} {season} — "
                f"using baseline {self.config.baseline_rating}"
            )
            return self.config.baseline_rating, 0.0
        return rating.power_rating, rating.confidence

    def project_spread(self, home_team_id: str, away_team_id: str,
                       season: int, neutral_site: bool = False) -> SpreadProjection:
        home_power, home_conf = self._power(home_team_id, season)
        away_power, away_conf = self._power(away_team_id, season)
        hfa = effective_hfa(self.hfa_config, home_team_id, neutral_site, self.config)
        spread = model_spread(home_power, away_power, hfa)
        return SpreadProjection(
            home_team_id    = home_team_id,
            away_team_id    = away_team_id,
            season          = season,
            spread          = spread,
            confidence      = min(home_conf, away_conf),
            home_power      = home_power,
            away_power      = away_power,
            hfa             = hfa,
            win_probability = win_probability(spread, self.config.spread_sigma),
            neutral_site    = neutral_site,
        )
