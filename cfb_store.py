"""
cfb_store.py — Storage interface for the CFB model

Every engine module talks to storage through DataStore; none of them touch
files directly. FrameStore is the in-process implementation: pandas
DataFrames held in memory, loaded from and flushed to a directory of CSVs.

Files (all optional on load):
    team_season_stats.csv     read-only input
    games.csv                 read-only input
    market_lines.csv          append-only quote history
    projections.csv           frozen model snapshots
    team_season_ratings.csv   one row per (team_id, season, model_version)
    bets.csv                  one row per bet_id
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from cfb_output_schemas import OUTPUT_FILE_SCHEMAS, completeness_report, validate_output
from cfb_types import (
    STAT_METRICS, Bet, Game, MarketLine, Projection,
    TeamSeasonRating, TeamSeasonStat,
)

log = logging.getLogger(__name__)

Records = Union[None, pd.DataFrame, Iterable]

TABLE_FILES = {
    "team_season_stats":   "team_season_stats.csv",
    "games":               "games.csv",
    "market_lines":        "market_lines.csv",
    "projections":         "projections.csv",
    "team_season_ratings": "team_season_ratings.csv",
    "bets":                "bets.csv",
}

NUMERIC_COLS = {
    "team_season_stats": ["season", "games_played", "talent_composite"] + STAT_METRICS,
    "games":             ["season", "week", "home_score", "away_score"],
    "market_lines":      ["line_value"],
    "projections":       ["model_spread", "model_total", "confidence"],
}

ID_COLS = {
    "team_season_stats": ["team_id"],
    "games":             ["game_id", "home_team_id", "away_team_id"],
    "market_lines":      ["game_id"],
    "projections":       ["game_id", "model_version"],
}

TIME_COLS = {
    "games":        "kickoff",
    "market_lines": "timestamp",
    "projections":  "created_at",
}


def to_utc(ts) -> pd.Timestamp:
    """Normalise any datetime-like to a tz-aware UTC Timestamp."""
    ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


class DataStore(ABC):
    """Persistence boundary used by ratings, HFA, grading and backtests."""

    @abstractmethod
    def get_team_season_stats(self, season: int) -> List[TeamSeasonStat]:
        ...

    @abstractmethod
    def get_team_season_rating(self, team_id: str, season: int,
                               model_version: str) -> Optional[TeamSeasonRating]:
        ...

    @abstractmethod
    def upsert_team_season_rating(self, rating: TeamSeasonRating) -> None:
        """Replace the whole row for (team_id, season, model_version)."""

    @abstractmethod
    def get_games(self, season: int) -> List[Game]:
        ...

    @abstractmethod
    def get_game(self, game_id: str) -> Optional[Game]:
        ...

    @abstractmethod
    def get_completed_games(self, season: int,
                            week_range: Optional[Tuple[int, int]] = None,
                            neutral_site: Optional[bool] = False) -> List[Game]:
        """Final games with both scores. neutral_site=None returns both kinds."""

    @abstractmethod
    def get_market_line_as_of(self, game_id: str, line_type: str, as_of,
                              side: Optional[str] = None) -> Optional[MarketLine]:
        """Latest quote with timestamp <= as_of."""

    @abstractmethod
    def get_closing_line(self, game_id: str, line_type: str,
                         side: Optional[str] = None) -> Optional[MarketLine]:
        ...

    @abstractmethod
    def get_projection_as_of(self, game_id: str, model_version: str,
                             as_of) -> Optional[Projection]:
        ...

    @abstractmethod
    def upsert_bet(self, bet: Bet) -> bool:
        ...

    @abstractmethod
    def get_bets(self, graded: Optional[bool] = None) -> List[Bet]:
        ...

    @abstractmethod
    def update_bet_result(self, bet_id: str, result: str, pnl: float,
                          clv: Optional[float],
                          close_price: Optional[float] = None) -> bool:
        """Grade an ungraded bet. Returns False (and writes nothing) if graded."""


# ═══════════════════════════════════════════════════════════════════════════════
# FRAME STORE
# ═══════════════════════════════════════════════════════════════════════════════

def _records_to_frame(records: Records, table: str) -> pd.DataFrame:
    if records is None:
        df = pd.DataFrame(columns=OUTPUT_FILE_SCHEMAS[table])
    elif isinstance(records, pd.DataFrame):
        df = records.copy()
    else:
        rows = []
        for rec in records:
            row = rec.to_dict() if hasattr(rec, "to_dict") else dict(rec)
            extra = row.pop("raw", None) or {}
            rows.append({**extra, **row})
        df = pd.DataFrame(rows, columns=None if rows else OUTPUT_FILE_SCHEMAS[table])
    return _normalise(df, table)


def _normalise(df: pd.DataFrame, table: str) -> pd.DataFrame:
    validate_output(df, table, strict=True)
    df = df.reset_index(drop=True)
    for col in NUMERIC_COLS.get(table, []):
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    for col in ID_COLS.get(table, []):
        df[col] = df[col].astype(str)
    time_col = TIME_COLS.get(table)
    if time_col is not None:
        if time_col not in df.columns:
            df[time_col] = pd.NaT
        df[time_col] = pd.to_datetime(df[time_col], utc=True, errors="coerce")
    if table == "market_lines":
        for col in ("book", "side"):
            if col not in df.columns:
                df[col] = None
    return df


class FrameStore(DataStore):
    """DataStore over in-memory DataFrames (inputs) and dicts (outputs)."""

    def __init__(
        self,
        stats: Records = None,
        games: Records = None,
        market_lines: Records = None,
        projections: Records = None,
        ratings: Records = None,
        bets: Records = None,
    ):
        self.stats = _records_to_frame(stats, "team_season_stats")
        self.games = _records_to_frame(games, "games")
        self.market_lines = _records_to_frame(market_lines, "market_lines")
        self.projections = _records_to_frame(projections, "projections")

        self._ratings: Dict[Tuple[str, int, str], TeamSeasonRating] = {}
        for row in _records_to_frame(ratings, "team_season_ratings").to_dict("records"):
            rating = TeamSeasonRating.from_row(row)
            self._ratings[rating.key] = rating

        self._bets: Dict[str, Bet] = {}
        for row in _records_to_frame(bets, "bets").to_dict("records"):
            bet = Bet.from_row(row)
            self._bets[bet.bet_id] = bet

    # ── CSV I/O ──────────────────────────────────────────────────────────────

    @classmethod
    def from_csv_dir(cls, path: Path) -> "FrameStore":
        path = Path(path)
        frames = {}
        for table, filename in TABLE_FILES.items():
            csv_path = path / filename
            if not csv_path.exists() or csv_path.stat().st_size == 0:
                log.info(f"{csv_path} not found — table '{table}' starts empty")
                continue
            frames[table] = pd.read_csv(csv_path, dtype=str, low_memory=False)
            log.info(f"Loaded {len(frames[table])} rows from {csv_path}")
        store = cls(
            stats=frames.get("team_season_stats"),
            games=frames.get("games"),
            market_lines=frames.get("market_lines"),
            projections=frames.get("projections"),
            ratings=frames.get("team_season_ratings"),
            bets=frames.get("bets"),
        )
        store.log_completeness()
        return store

    def tables(self) -> Dict[str, pd.DataFrame]:
        return {
            "team_season_stats":   self.stats,
            "games":               self.games,
            "market_lines":        self.market_lines,
            "projections":         self.projections,
            "team_season_ratings": self.ratings_frame(),
            "bets":                self.bets_frame(),
        }

    def log_completeness(self) -> pd.DataFrame:
        report = completeness_report(self.tables())
        for row in report.itertuples(index=False):
            log.info(f"Completeness {row.output}: {row.rows} rows, "
                     f"{row.null_pct:.1f}% null in required columns")
        return report

    def to_csv_dir(self, path: Path) -> Dict[str, Path]:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        written = {}
        for table, df in self.tables().items():
            validate_output(df, table, strict=True)
            out = path / TABLE_FILES[table]
            df.to_csv(out, index=False)
            written[table] = out
        log.info(f"Wrote {len(written)} tables to {path}")
        return written

    def ratings_frame(self) -> pd.DataFrame:
        rows = [r.to_dict() for r in self._ratings.values()]
        return pd.DataFrame(rows, columns=None if rows else OUTPUT_FILE_SCHEMAS["team_season_ratings"])

    def bets_frame(self) -> pd.DataFrame:
        rows = [b.to_dict() for b in self._bets.values()]
        return pd.DataFrame(rows, columns=None if rows else OUTPUT_FILE_SCHEMAS["bets"])

    # ── Stats / ratings ──────────────────────────────────────────────────────

    def get_team_season_stats(self, season: int) -> List[TeamSeasonStat]:
        df = self.stats[self.stats["season"] == season]
        return [TeamSeasonStat.from_row(row) for row in df.to_dict("records")]

    def get_team_season_rating(self, team_id, season, model_version):
        rating = self._ratings.get((str(team_id), int(season), model_version))
        return replace(rating) if rating is not None else None

    def get_ratings(self, season: int, model_version: str) -> List[TeamSeasonRating]:
        return [replace(r) for r in self._ratings.values()
                if r.season == season and r.model_version == model_version]

    def upsert_team_season_rating(self, rating: TeamSeasonRating) -> None:
        self._ratings[rating.key] = replace(rating)

    # ── Games ────────────────────────────────────────────────────────────────

    def get_games(self, season: int) -> List[Game]:
        df = self.games[self.games["season"] == season]
        df = df.sort_values(["kickoff", "game_id"], kind="mergesort", na_position="last")
        return [Game.from_row(row) for row in df.to_dict("records")]

    def get_game(self, game_id: str) -> Optional[Game]:
        df = self.games[self.games["game_id"] == str(game_id)]
        if df.empty:
            return None
        return Game.from_row(df.iloc[0].to_dict())

    def get_completed_games(self, season, week_range=None, neutral_site=False):
        games = [g for g in self.get_games(season) if g.is_final]
        if week_range is not None:
            lo, hi = week_range
            games = [g for g in games if lo <= g.week <= hi]
        if neutral_site is not None:
            games = [g for g in games if g.neutral_site == bool(neutral_site)]
        return games

    # ── Market lines ─────────────────────────────────────────────────────────

    def _lines_for(self, game_id, line_type, side) -> pd.DataFrame:
        df = self.market_lines
        mask = (df["game_id"] == str(game_id)) & (df["line_type"] == line_type)
        if side is not None:
            mask &= df["side"] == side
        return df[mask].sort_values("timestamp", kind="mergesort")

    def append_market_line(self, line: MarketLine) -> None:
        row = _records_to_frame([line], "market_lines")
        self.market_lines = pd.concat([self.market_lines, row], ignore_index=True)

    def get_market_line_as_of(self, game_id, line_type, as_of, side=None):
        lines = self._lines_for(game_id, line_type, side)
        lines = lines[lines["timestamp"] <= to_utc(as_of)]
        if lines.empty:
            return None
        return MarketLine.from_row(lines.iloc[-1].to_dict())

    def get_closing_line(self, game_id, line_type, side=None):
        lines = self._lines_for(game_id, line_type, side)
        if lines.empty:
            return None
        return MarketLine.from_row(lines.iloc[-1].to_dict())

    # ── Projections ──────────────────────────────────────────────────────────

    def upsert_projection(self, projection: Projection) -> None:
        """Projections are snapshots; a new one never overwrites an older one."""
        row = _records_to_frame([projection], "projections")
        self.projections = pd.concat([self.projections, row], ignore_index=True)

    def get_projection_as_of(self, game_id, model_version, as_of):
        df = self.projections
        mask = ((df["game_id"] == str(game_id))
                & (df["model_version"] == model_version)
                & (df["created_at"] <= to_utc(as_of)))
        snaps = df[mask].sort_values("created_at", kind="mergesort")
        if snaps.empty:
            return None
        return Projection.from_row(snaps.iloc[-1].to_dict())

    # ── Bets ─────────────────────────────────────────────────────────────────

    def upsert_bet(self, bet: Bet) -> bool:
        existing = self._bets.get(bet.bet_id)
        if existing is not None and existing.is_graded:
            log.warning(f"Bet {bet.bet_id} already graded ({existing.result}) — upsert ignored")
            return False
        self._bets[bet.bet_id] = replace(bet)
        return True

    def get_bets(self, graded: Optional[bool] = None) -> List[Bet]:
        bets = [replace(b) for b in self._bets.values()]
        if graded is None:
            return bets
        return [b for b in bets if b.is_graded == graded]

    def update_bet_result(self, bet_id, result, pnl, clv, close_price=None) -> bool:
        bet = self._bets.get(bet_id)
        if bet is None:
            raise KeyError(f"Unknown bet_id: {bet_id!r}")
        if bet.is_graded:
            return False
        self._bets[bet_id] = replace(
            bet,
            result=result,
            pnl=pnl,
            clv=clv,
            close_price=close_price if close_price is not None else bet.close_price,
        )
        return True
