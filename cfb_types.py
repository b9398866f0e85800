"""
Entity records shared across the CFB model.

Spread conventions:
  - Model values (ratings diff, projections, Bet.model_price for spreads)
    are in the HMA frame: home minus away, positive = home favored.
  - MarketLine.line_value for spreads is stored as books quote it
    (negative = home favored). Convert with cfb_spreads.quote_to_hma.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Optional

import pandas as pd

LINE_TYPES  = ("spread", "total", "moneyline")
BET_SIDES   = ("home", "away", "over", "under")
BET_RESULTS = ("win", "loss", "push")
GAME_STATUSES = ("scheduled", "in_progress", "final")

STAT_METRICS = [
    "ypp_off", "pass_ypa_off", "rush_ypc_off", "success_off", "epa_off",
    "ypp_def", "pass_ypa_def", "rush_ypc_def", "success_def", "epa_def",
    "pace",
]


def opt_float(val) -> Optional[float]:
    if val is None:
        return None
    try:
        v = float(val)
    except (TypeError, ValueError):
        return None
    return None if pd.isna(v) else v


def opt_int(val) -> Optional[int]:
    v = opt_float(val)
    return None if v is None else int(v)


def as_bool(val) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "t")
    if val is None:
        return False
    try:
        if pd.isna(val):
            return False
    except (TypeError, ValueError):
        pass
    return bool(val)


def as_timestamp(val) -> Optional[pd.Timestamp]:
    if val is None:
        return None
    ts = pd.to_datetime(val, utc=True, errors="coerce")
    return None if pd.isna(ts) else ts


def opt_str(val) -> Optional[str]:
    if val is None:
        return None
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):
        pass
    text = str(val)
    return text if text else None


@dataclass
class TeamSeasonStat:
    """Per-team season efficiency metrics (read-only input)."""
    team_id:          str
    season:           int
    games_played:     Optional[int]   = None

    ypp_off:          Optional[float] = None
    pass_ypa_off:     Optional[float] = None
    rush_ypc_off:     Optional[float] = None
    success_off:      Optional[float] = None
    epa_off:          Optional[float] = None

    ypp_def:          Optional[float] = None
    pass_ypa_def:     Optional[float] = None
    rush_ypc_def:     Optional[float] = None
    success_def:      Optional[float] = None
    epa_def:          Optional[float] = None

    pace:             Optional[float] = None
    talent_composite: Optional[float] = None
    data_source:      str = "season"       # "game" or "season"
    raw:              Dict[str, float] = field(default_factory=dict)

    def metric(self, name: str) -> Optional[float]:
        if name in STAT_METRICS or name == "talent_composite":
            return getattr(self, name)
        return opt_float(self.raw.get(name))

    @classmethod
    def from_row(cls, row: Dict) -> "TeamSeasonStat":
        known = set(STAT_METRICS) | {"team_id", "season", "games_played",
                                     "talent_composite", "data_source"}
        raw = {k: v for k, v in row.items()
               if k not in known and opt_float(v) is not None}
        return cls(
            team_id          = str(row["team_id"]),
            season           = int(row["season"]),
            games_played     = opt_int(row.get("games_played")),
            talent_composite = opt_float(row.get("talent_composite")),
            data_source      = opt_str(row.get("data_source")) or "season",
            raw              = {k: float(v) for k, v in raw.items()},
            **{m: opt_float(row.get(m)) for m in STAT_METRICS},
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TeamSeasonRating:
    """One computed rating per (team_id, season, model_version)."""
    team_id:          str
    season:           int
    model_version:    str
    offense_rating:   float = 0.0
    defense_rating:   float = 0.0
    talent_component: float = 0.0
    power_rating:     float = 0.0
    confidence:       float = 0.0
    data_source:      str   = "baseline"
    games_played:     Optional[int] = None

    @property
    def key(self):
        return (self.team_id, self.season, self.model_version)

    @classmethod
    def from_row(cls, row: Dict) -> "TeamSeasonRating":
        return cls(
            team_id          = str(row["team_id"]),
            season           = int(row["season"]),
            model_version    = str(row["model_version"]),
            offense_rating   = opt_float(row.get("offense_rating")) or 0.0,
            defense_rating   = opt_float(row.get("defense_rating")) or 0.0,
            talent_component = opt_float(row.get("talent_component")) or 0.0,
            power_rating     = opt_float(row.get("power_rating")) or 0.0,
            confidence       = opt_float(row.get("confidence")) or 0.0,
            data_source      = opt_str(row.get("data_source")) or "baseline",
            games_played     = opt_int(row.get("games_played")),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Game:
    """A scheduled or completed matchup."""
    game_id:      str
    season:       int
    week:         int
    home_team_id: str
    away_team_id: str
    neutral_site: bool = False
    kickoff:      Optional[pd.Timestamp] = None
    status:       str = "scheduled"
    home_score:   Optional[float] = None
    away_score:   Optional[float] = None

    @property
    def has_scores(self) -> bool:
        return self.home_score is not None and self.away_score is not None

    @property
    def is_final(self) -> bool:
        return self.status == "final" and self.has_scores

    @property
    def margin(self) -> Optional[float]:
        """Home minus away."""
        if not self.has_scores:
            return None
        return float(self.home_score) - float(self.away_score)

    @property
    def total(self) -> Optional[float]:
        if not self.has_scores:
            return None
        return float(self.home_score) + float(self.away_score)

    @classmethod
    def from_row(cls, row: Dict) -> "Game":
        return cls(
            game_id      = str(row["game_id"]),
            season       = int(row["season"]),
            week         = int(row["week"]),
            home_team_id = str(row["home_team_id"]),
            away_team_id = str(row["away_team_id"]),
            neutral_site = as_bool(row.get("neutral_site")),
            kickoff      = as_timestamp(row.get("kickoff")),
            status       = opt_str(row.get("status")) or "scheduled",
            home_score   = opt_float(row.get("home_score")),
            away_score   = opt_float(row.get("away_score")),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class MarketLine:
    """A single timestamped quote. Spreads are in book quote frame."""
    game_id:    str
    line_type:  str
    line_value: float
    timestamp:  pd.Timestamp
    book:       str = "consensus"
    side:       Optional[str] = None    # moneyline only: "home" / "away"

    @classmethod
    def from_row(cls, row: Dict) -> "MarketLine":
        return cls(
            game_id    = str(row["game_id"]),
            line_type  = str(row["line_type"]),
            line_value = float(row["line_value"]),
            timestamp  = as_timestamp(row["timestamp"]),
            book       = opt_str(row.get("book")) or "consensus",
            side       = opt_str(row.get("side")),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Projection:
    """A frozen model output, as it existed at created_at."""
    game_id:       str
    model_version: str
    created_at:    pd.Timestamp
    model_spread:  float                 # HMA frame
    model_total:   Optional[float] = None
    confidence:    float = 0.0

    @classmethod
    def from_row(cls, row: Dict) -> "Projection":
        return cls(
            game_id       = str(row["game_id"]),
            model_version = str(row["model_version"]),
            created_at    = as_timestamp(row["created_at"]),
            model_spread  = float(row["model_spread"]),
            model_total   = opt_float(row.get("model_total")),
            confidence    = opt_float(row.get("confidence")) or 0.0,
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Bet:
    """
    A simulated or real wager. result is None until graded, and once set
    it is never rewritten.

    model_price holds the line taken (spread in HMA frame, total in points)
    or, for moneylines, the American price taken. close_price uses the same
    units.
    """
    bet_id:        str
    game_id:       str
    season:        int
    week:          int
    market_type:   str
    side:          str
    model_price:   float
    stake:         float
    close_price:   Optional[float] = None
    edge:          Optional[float] = None
    tier:          Optional[str]   = None
    model_version: str = ""
    strategy:      str = "backtest"
    created_at:    Optional[datetime] = None
    result:        Optional[str]   = None
    pnl:           Optional[float] = None
    clv:           Optional[float] = None

    @property
    def is_graded(self) -> bool:
        return self.result is not None

    @classmethod
    def from_row(cls, row: Dict) -> "Bet":
        return cls(
            bet_id        = str(row["bet_id"]),
            game_id       = str(row["game_id"]),
            season        = int(row["season"]),
            week          = int(row["week"]),
            market_type   = str(row["market_type"]),
            side          = str(row["side"]),
            model_price   = float(row["model_price"]),
            stake         = float(row["stake"]),
            close_price   = opt_float(row.get("close_price")),
            edge          = opt_float(row.get("edge")),
            tier          = opt_str(row.get("tier")),
            model_version = opt_str(row.get("model_version")) or "",
            strategy      = opt_str(row.get("strategy")) or "backtest",
            created_at    = as_timestamp(row.get("created_at")),
            result        = opt_str(row.get("result")),
            pnl           = opt_float(row.get("pnl")),
            clv           = opt_float(row.get("clv")),
        )

    def to_dict(self) -> Dict:
        return asdict(self)
