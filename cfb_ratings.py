#!/usr/bin/env python3
"""
cfb_ratings.py — Season power ratings from efficiency metrics

PIPELINE
─────────────────────────────────────────────────────────────────────────────
1. Z-score every tracked metric against the season's league distribution
   (population stdev over teams that report the metric).
2. offense = weighted blend of offensive z-scores
   defense = weighted blend of defensive z-scores, sign inverted
             (allowing fewer yards is good)
   A missing metric drops out and the remaining weights are renormalised.
3. talent  = talent_weight * z(talent_composite) * decay(games_played)
4. power   = (offense + defense + talent) * calibration_factor

Every team with a stat row or a game this season gets exactly one rating.
Teams with nothing to go on receive baseline_rating at confidence 0.

Usage:
    python cfb_ratings.py --season 2024
    python cfb_ratings.py --season 2024 --model-version v2 --config tuned.json
"""

import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from cfb_config import DATA_DIR, DEFAULT_MODEL_VERSION, ModelConfig, load_model_config
from cfb_output_schemas import validate_output
from cfb_types import TeamSeasonRating, TeamSeasonStat

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Z-SCORES / BLENDS
# ═══════════════════════════════════════════════════════════════════════════════

def zscore(values: pd.Series) -> pd.Series:
    """Population z-score; NaN stays NaN. Zero spread maps stdev to 1."""
    present = values.dropna()
    if present.empty:
        return values.astype(float)
    mean = present.mean()
    std = present.std(ddof=0)
    if not std or np.isnan(std):
        std = 1.0
    return (values - mean) / std


def league_zscores(stats: List[TeamSeasonStat], metrics: List[str]) -> pd.DataFrame:
    """team_id-indexed frame of z-scores, one column per metric."""
    frame = pd.DataFrame(
        [{"team_id": s.team_id, **{m: s.metric(m) for m in metrics}} for s in stats],
        columns=["team_id"] + metrics,
    ).set_index("team_id")
    frame = frame.apply(pd.to_numeric, errors="coerce")
    return frame.apply(zscore)


def blend(z_row: pd.Series, weights: Dict[str, float], invert: bool = False) -> Optional[float]:
    present = {m: w for m, w in weights.items()
               if m in z_row.index and pd.notna(z_row[m])}
    total_w = sum(present.values())
    if not present or total_w <= 0:
        return None
    value = sum(w * z_row[m] for m, w in present.items()) / total_w
    return -value if invert else value


def talent_decay(games_played: Optional[int], config: ModelConfig) -> float:
    gp = games_played or 0
    return max(config.talent_decay_floor, 1.0 - gp / config.talent_decay_games)


def _data_source(stat_source: str, has_efficiency: bool, has_talent: bool) -> str:
    if has_efficiency:
        return "game+season" if stat_source == "game" else "season_only"
    if has_talent:
        return "talent_only"
    return "baseline"


def _source_quality(data_source: str, config: ModelConfig) -> float:
    quality = config.data_source_quality
    if data_source == "game+season":
        return quality.get("game", 1.0)
    if data_source == "season_only":
        return quality.get("season", 0.9)
    return quality.get("baseline", 0.7)


def _baseline(team_id: str, season: int, model_version: str,
              config: ModelConfig, games_played: Optional[int] = None) -> TeamSeasonRating:
    return TeamSeasonRating(
        team_id=team_id,
        season=season,
        model_version=model_version,
        power_rating=config.baseline_rating,
        confidence=0.0,
        data_source="baseline",
        games_played=games_played,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

def rate_teams(
    stats: List[TeamSeasonStat],
    season: int,
    config: Optional[ModelConfig] = None,
    model_version: str = DEFAULT_MODEL_VERSION,
    extra_team_ids=(),
) -> List[TeamSeasonRating]:
    """Pure rating computation over one season's stat rows."""
    config = config or ModelConfig()
    off_w, def_w = config.offense_weights, config.defense_weights
    tracked = list(off_w) + list(def_w)

    z = league_zscores(stats, tracked + ["talent_composite"])

    ratings: Dict[str, TeamSeasonRating] = {}
    for stat in stats:
        if stat.team_id in ratings:
            log.warning(f"Duplicate stat row for {stat.team_id} {season} — keeping first")
            continue
        z_row = z.loc[stat.team_id]
        if isinstance(z_row, pd.DataFrame):
            z_row = z_row.iloc[0]

        offense = blend(z_row, off_w)
        defense = blend(z_row, def_w, invert=True)
        talent_z = z_row["talent_composite"]
        has_talent = pd.notna(talent_z)
        has_eff = offense is not None or defense is not None

        source = _data_source(stat.data_source, has_eff, has_talent)
        if source == "baseline":
            log.warning(f"DataGap: {stat.team_id} {season} has no usable metrics — baseline")
            ratings[stat.team_id] = _baseline(stat.team_id, season, model_version,
                                              config, stat.games_played)
            continue

        talent = (config.talent_weight * float(talent_z) * talent_decay(stat.games_played, config)
                  if has_talent else 0.0)
        offense = offense or 0.0
        defense = defense or 0.0

        n_present = int(z_row[tracked].notna().sum()) + int(has_talent)
        coverage = n_present / (len(tracked) + 1)
        if stat.games_played is None:
            sample = 1.0
        else:
            sample = min(1.0, stat.games_played / max(config.min_games_for_full_confidence, 1))

        ratings[stat.team_id] = TeamSeasonRating(
            team_id          = stat.team_id,
            season           = season,
            model_version    = model_version,
            offense_rating   = float(offense),
            defense_rating   = float(defense),
            talent_component = float(talent),
            power_rating     = float((offense + defense + talent) * config.calibration_factor),
            confidence       = float(coverage * _source_quality(source, config) * sample),
            data_source      = source,
            games_played     = stat.games_played,
        )

    for team_id in extra_team_ids:
        if team_id not in ratings:
            log.warning(f"DataGap: {team_id} {season} plays but has no stats — baseline")
            ratings[team_id] = _baseline(team_id, season, model_version, config)

    return [ratings[t] for t in sorted(ratings)]


def compute_ratings(
    store,
    season: int,
    config: Optional[ModelConfig] = None,
    model_version: str = DEFAULT_MODEL_VERSION,
    persist: bool = True,
) -> List[TeamSeasonRating]:
    config = config or ModelConfig()
    stats = store.get_team_season_stats(season)
    game_teams = set()
    for g in store.get_games(season):
        game_teams.update((g.home_team_id, g.away_team_id))

    ratings = rate_teams(stats, season, config, model_version, extra_team_ids=sorted(game_teams))

    if persist:
        for rating in ratings:
            store.upsert_team_season_rating(rating)

    n_base = sum(1 for r in ratings if r.data_source == "baseline")
    log.info(
        f"Rated {len(ratings)} teams for {season} ({model_version}); "
        f"{n_base} at baseline"
    )
    return ratings


def ratings_frame(ratings: List[TeamSeasonRating]) -> pd.DataFrame:
    df = pd.DataFrame([r.to_dict() for r in ratings])
    if not df.empty:
        df = df.sort_values("power_rating", ascending=False).reset_index(drop=True)
    return df


def main():
    from cfb_store import FrameStore

    parser = argparse.ArgumentParser(description="Compute CFB season power ratings")
    parser.add_argument("--season", type=int, required=True)
    parser.add_argument("--model-version", default=DEFAULT_MODEL_VERSION)
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--top", type=int, default=25, help="Rows to print")
    args = parser.parse_args()

    store = FrameStore.from_csv_dir(args.data_dir)
    config = load_model_config(args.config)
    ratings = compute_ratings(store, args.season, config, args.model_version)

    out = store.ratings_frame()
    validate_output(out, "team_season_ratings", strict=True)
    out_path = args.data_dir / "team_season_ratings.csv"
    out.to_csv(out_path, index=False)
    log.info(f"Ratings → {out_path}")

    df = ratings_frame(ratings)
    if not df.empty:
        print(df.head(args.top)[["team_id", "power_rating", "offense_rating",
                                  "defense_rating", "talent_component",
                                  "confidence", "data_source"]].to_string(index=False))


if __name__ == "__main__":
    main()
