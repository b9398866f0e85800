#!/usr/bin/env python3
"""
cfb_hfa.py — Team-specific home-field advantage calibration

Learns how many points each program gains at home beyond the league-wide
base, from completed regular-season home games.

METHOD
─────────────────────────────────────────────────────────────────────────────
For each completed, non-neutral game with week <= regular_season_max_week:

    expected = model_spread(home_power, away_power, base_hfa)
    residual = actual_margin - expected

Residuals are grouped by home team and shrunk toward zero:

    adjustment = mean_residual * n / (n + shrinkage_k)

then clipped so base_hfa + adjustment stays inside [clip_min, clip_max].
Ratings come from one fixed training model_version so the residuals are not
contaminated by the HFA being learned.

Outputs:
    data/hfa_config_<version>.json   — published once, never overwritten

Usage:
    python cfb_hfa.py --seasons 2022 2023 2024
    python cfb_hfa.py --seasons 2024 --model-version v1 --version 2025a
"""

import argparse
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from cfb_config import DATA_DIR, DEFAULT_MODEL_VERSION, ModelConfig, load_model_config
from cfb_errors import ConfigError, InsufficientSampleError, InvariantViolation
from cfb_spreads import model_spread

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)

CLIP_EPS = 1e-9


@dataclass
class HfaTeamAdjustment:
    adjustment:     float
    sample_size:    int
    mean_residual:  float
    stdev_residual: float


@dataclass
class HfaConfig:
    base_hfa_points:        float
    clip_min:               float
    clip_max:               float
    shrinkage_k:            float
    team_adjustments:       Dict[str, HfaTeamAdjustment] = field(default_factory=dict)
    version:                str = "v1"
    trained_at:             str = ""
    seasons:                List[int] = field(default_factory=list)
    training_model_version: str = DEFAULT_MODEL_VERSION
    diagnostics:            Dict = field(default_factory=dict)

    def effective_hfa(self, team_id: str) -> float:
        entry = self.team_adjustments.get(team_id)
        if entry is None:
            return self.base_hfa_points
        return self.base_hfa_points + entry.adjustment

    def validate(self) -> None:
        for team_id, entry in self.team_adjustments.items():
            eff = self.base_hfa_points + entry.adjustment
            if not (self.clip_min - CLIP_EPS) <= eff <= (self.clip_max + CLIP_EPS):
                msg = (f"HFA for {team_id} = {eff:.3f} outside "
                       f"[{self.clip_min}, {self.clip_max}]")
                log.error(msg)
                raise InvariantViolation(msg)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict) -> "HfaConfig":
        payload = dict(payload)
        payload["team_adjustments"] = {
            team_id: HfaTeamAdjustment(**entry)
            for team_id, entry in payload.get("team_adjustments", {}).items()
        }
        return cls(**payload)


def default_hfa_path(version: str) -> Path:
    return DATA_DIR / f"hfa_config_{version}.json"


def save_hfa_config(hfa: HfaConfig, path: Optional[Path] = None,
                    overwrite: bool = False) -> Path:
    """Publish `hfa` as JSON. A published version is never rewritten."""
    hfa.validate()
    path = Path(path) if path is not None else default_hfa_path(hfa.version)
    if path.exists() and not overwrite:
        raise ConfigError(f"HFA config {path} already published — bump the version")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(hfa.to_dict(), f, indent=2)
    log.info(f"HFA config {hfa.version} → {path}")
    return path


def load_hfa_config(path: Path) -> HfaConfig:
    path = Path(path)
    try:
        payload = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read HFA config {path}: {exc}") from exc
    try:
        hfa = HfaConfig.from_dict(payload)
    except (TypeError, AttributeError) as exc:
        raise ConfigError(f"Malformed HFA config {path}: {exc}") from exc
    hfa.validate()
    return hfa


# ═══════════════════════════════════════════════════════════════════════════════
# TRAINING
# ═══════════════════════════════════════════════════════════════════════════════

def _collect_residuals(store, seasons: Iterable[int], config: ModelConfig,
                       model_version: str):
    rows = []
    skipped = 0
    for season in seasons:
        games = store.get_completed_games(
            season, week_range=(0, config.regular_season_max_week), neutral_site=False,
        )
        for g in games:
            home = store.get_team_season_rating(g.home_team_id, season, model_version)
            away = store.get_team_season_rating(g.away_team_id, season, model_version)
            if home is None or away is None:
                skipped += 1
                log.debug(f"Skipping {g.game_id}: missing {model_version} rating")
                continue
            expected = model_spread(home.power_rating, away.power_rating, config.base_hfa)
            rows.append({
                "game_id":  g.game_id,
                "season":   season,
                "team_id":  g.home_team_id,
                "residual": g.margin - expected,
            })
    if skipped:
        log.warning(f"{skipped} games skipped for missing ratings")
    return pd.DataFrame(rows, columns=["game_id", "season", "team_id", "residual"]), skipped


def train_hfa(
    store,
    seasons: Iterable[int],
    config: Optional[ModelConfig] = None,
    model_version: str = DEFAULT_MODEL_VERSION,
    version: Optional[str] = None,
) -> HfaConfig:
    config = config or ModelConfig()
    seasons = sorted(set(int(s) for s in seasons))
    base = config.base_hfa
    k = config.hfa_shrinkage_k

    residuals, skipped = _collect_residuals(store, seasons, config, model_version)
    if residuals.empty:
        raise InsufficientSampleError("HFA training games", 0, 1)

    grouped = residuals.groupby("team_id")["residual"].agg(["mean", "std", "count"])
    lo, hi = config.hfa_clip_min - base, config.hfa_clip_max - base

    adjustments = {}
    clipped = 0
    for team_id, row in grouped.iterrows():
        n = int(row["count"])
        raw = row["mean"] * n / (n + k)
        adj = float(np.clip(raw, lo, hi))
        if adj != raw:
            clipped += 1
        adjustments[str(team_id)] = HfaTeamAdjustment(
            adjustment     = adj,
            sample_size    = n,
            mean_residual  = float(row["mean"]),
            stdev_residual = 0.0 if pd.isna(row["std"]) else float(row["std"]),
        )

    effective = pd.Series([base + a.adjustment for a in adjustments.values()])
    sizes = grouped["count"]
    diagnostics = {
        "games_used":             int(len(residuals)),
        "games_skipped":          int(skipped),
        "teams":                  int(len(adjustments)),
        "teams_clipped":          int(clipped),
        "mean_residual":          float(residuals["residual"].mean()),
        "effective_hfa_mean":     float(effective.mean()),
        "effective_hfa_median":   float(effective.median()),
        "effective_hfa_std":      float(effective.std(ddof=0)),
        "sample_size_min":        int(sizes.min()),
        "sample_size_max":        int(sizes.max()),
    }

    trained_at = datetime.now(timezone.utc)
    hfa = HfaConfig(
        base_hfa_points        = base,
        clip_min               = config.hfa_clip_min,
        clip_max               = config.hfa_clip_max,
        shrinkage_k            = k,
        team_adjustments       = adjustments,
        version                = version or trained_at.strftime("%Y%m%d%H%M%S"),
        trained_at             = trained_at.isoformat(),
        seasons                = seasons,
        training_model_version = model_version,
        diagnostics            = diagnostics,
    )
    hfa.validate()

    log.info(
        f"HFA trained on {diagnostics['games_used']} games / {diagnostics['teams']} teams "
        f"(skipped {skipped}, clipped {clipped}); "
        f"effective mean {diagnostics['effective_hfa_mean']:.2f}"
    )
    return hfa


def main():
    from cfb_store import FrameStore

    parser = argparse.ArgumentParser(description="Train team-specific HFA")
    parser.add_argument("--seasons", type=int, nargs="+", required=True)
    parser.add_argument("--model-version", default=DEFAULT_MODEL_VERSION,
                        help="Rating version the residuals are computed against")
    parser.add_argument("--version", default=None, help="Published HFA version label")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--output", type=Path, default=None)
    args = parser.parse_args()

    store = FrameStore.from_csv_dir(args.data_dir)
    config = load_model_config(args.config)
    hfa = train_hfa(store, args.seasons, config, args.model_version, args.version)
    save_hfa_config(hfa, args.output)


if __name__ == "__main__":
    main()
