#!/usr/bin/env python3
"""
cfb_projections.py — Batch projection snapshots for a season slate

Projects every game of a season with the current ratings and a published
HFA config, then freezes the result as a Projection stamped created_at.
These snapshots are what the backtester and bet grading read "as of" a
moment, so a run never rewrites an earlier one.

For each game:
    model_spread = home_power - away_power + effective_hfa   (HMA)
    model_total  = market_total + clip(beta * (model_spread - market_spread))

Market inputs are the latest quotes at or before created_at. A game with no
total or spread quote yet gets a projection with model_total left empty.

Outputs:
    data/projections.csv   — existing snapshots plus this run's

Usage:
    python cfb_projections.py --season 2024 --hfa data/hfa_config_2025a.json
    python cfb_projections.py --season 2024 --created-at 2024-10-01T00:00:00Z
"""

import argparse
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd

from cfb_config import DATA_DIR, DEFAULT_MODEL_VERSION, ModelConfig, load_model_config
from cfb_hfa import load_hfa_config
from cfb_output_schemas import validate_output
from cfb_spreads import SpreadProjector, project_total, quote_to_hma
from cfb_store import to_utc
from cfb_types import Projection

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# SNAPSHOTS
# ═══════════════════════════════════════════════════════════════════════════════

def _market_value(store, game_id: str, line_type: str, as_of) -> Optional[float]:
    line = store.get_market_line_as_of(game_id, line_type, as_of)
    if line is None:
        return None
    if line_type == "spread":
        return quote_to_hma(line.line_value)
    return line.line_value


def generate_projections(
    store,
    season: int,
    hfa_config=None,
    model_version: str = DEFAULT_MODEL_VERSION,
    config: Optional[ModelConfig] = None,
    created_at=None,
) -> List[Projection]:
    """Project and persist one snapshot per game in `season`."""
    config = config or ModelConfig()
    created_at = to_utc(created_at) if created_at is not None else pd.Timestamp.now(tz="UTC")
    projector = SpreadProjector(store, hfa_config, model_version, config)

    projections = []
    for g in store.get_games(season):
        proj = projector.project_spread(g.home_team_id, g.away_team_id, season, g.neutral_site)
        model_total = project_total(
            _market_value(store, g.game_id, "total", created_at),
            _market_value(store, g.game_id, "spread", created_at),
            proj.spread,
            config.totals_beta,
            config.totals_max_overlay,
        )
        snapshot = Projection(
            game_id       = g.game_id,
            model_version = model_version,
            created_at    = created_at,
            model_spread  = proj.spread,
            model_total   = model_total,
            confidence    = proj.confidence,
        )
        store.upsert_projection(snapshot)
        projections.append(snapshot)

    with_total = sum(1 for p in projections if p.model_total is not None)
    log.info(
        f"Projected {len(projections)} {season} games ({model_version}) "
        f"as of {created_at.isoformat()}; {with_total} with a total"
    )
    return projections


def main():
    from cfb_store import FrameStore

    parser = argparse.ArgumentParser(description="Snapshot CFB game projections")
    parser.add_argument("--season", type=int, required=True)
    parser.add_argument("--model-version", default=DEFAULT_MODEL_VERSION)
    parser.add_argument("--hfa", type=Path, default=None,
                        help="Published HFA config JSON (default: base HFA for every team)")
    parser.add_argument("--created-at", type=str, default=None,
                        help="Snapshot timestamp (default: now, UTC)")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--config", type=Path, default=None)
    args = parser.parse_args()

    store = FrameStore.from_csv_dir(args.data_dir)
    config = load_model_config(args.config)
    hfa = load_hfa_config(args.hfa) if args.hfa is not None else None
    generate_projections(store, args.season, hfa, args.model_version, config, args.created_at)

    validate_output(store.projections, "projections", strict=True)
    out_path = args.data_dir / "projections.csv"
    store.projections.to_csv(out_path, index=False)
    log.info(f"Projections → {out_path}")


if __name__ == "__main__":
    main()
