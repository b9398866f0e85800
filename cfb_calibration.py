#!/usr/bin/env python3
"""
cfb_calibration.py — Fit the rating-to-market mapping

Regresses closing market spreads (HMA frame) on stored rating differences:

    market_spread ≈ alpha + beta * rating_diff [+ gamma * rating_diff²]

alpha soaks up average home field, beta says how far the rating scale is
stretched relative to the market. A beta of 0.9 means ratings are 10% too
wide, and the calibration factor should shrink by the same amount.

Solved in closed form: (XᵀX + λP) b = Xᵀy with P = diag(0, 1, 1), so the
intercept is never penalised.

Only persisted ratings and closing lines are read. Ratings are never
recomputed here; run cfb_ratings first.

Usage:
    python cfb_calibration.py --seasons 2023 2024
    python cfb_calibration.py --seasons 2024 --quadratic --lambdas 0 1 5 10
"""

import argparse
import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg

from cfb_config import (
    DATA_DIR, DEFAULT_MODEL_VERSION, MIN_CALIBRATION_GAMES, load_model_config,
)
from cfb_errors import InsufficientSampleError, NumericInstabilityError
from cfb_output_schemas import validate_output
from cfb_spreads import quote_to_hma

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)

SAMPLE_COLUMNS = [
    "game_id", "season", "week", "home_team_id", "away_team_id",
    "neutral_site", "rating_diff", "market_spread",
]


@dataclass
class CalibrationFit:
    alpha:          float
    beta:           float
    gamma:          Optional[float]
    r2:             float
    rmse:           float
    n_games:        int
    regularization: float

    def predict(self, rating_diff):
        diff = np.asarray(rating_diff, dtype=float)
        out = self.alpha + self.beta * diff
        if self.gamma is not None:
            out = out + self.gamma * diff ** 2
        return out

    def to_dict(self) -> Dict:
        return asdict(self)


def build_calibration_sample(
    store,
    seasons: Iterable[int],
    model_version: str = DEFAULT_MODEL_VERSION,
    weeks: Optional[Tuple[int, int]] = None,
    include_neutral: bool = False,
) -> pd.DataFrame:
    rows = []
    missing_rating = missing_line = 0
    for season in seasons:
        for g in store.get_games(season):
            if weeks is not None and not weeks[0] <= g.week <= weeks[1]:
                continue
            if g.neutral_site and not include_neutral:
                continue
            home = store.get_team_season_rating(g.home_team_id, season, model_version)
            away = store.get_team_season_rating(g.away_team_id, season, model_version)
            if home is None or away is None:
                missing_rating += 1
                continue
            close = store.get_closing_line(g.game_id, "spread")
            if close is None:
                missing_line += 1
                continue
            rows.append({
                "game_id":       g.game_id,
                "season":        season,
                "week":          g.week,
                "home_team_id":  g.home_team_id,
                "away_team_id":  g.away_team_id,
                "neutral_site":  g.neutral_site,
                "rating_diff":   home.power_rating - away.power_rating,
                "market_spread": quote_to_hma(close.line_value),
            })

    if missing_rating or missing_line:
        log.warning(
            f"Calibration sample skipped {missing_rating} games without ratings, "
            f"{missing_line} without a closing spread"
        )
    df = pd.DataFrame(rows, columns=SAMPLE_COLUMNS)
    log.info(f"Calibration sample: {len(df)} games ({model_version})")
    return df


def _design(diff: np.ndarray, quadratic: bool) -> np.ndarray:
    cols = [np.ones_like(diff), diff]
    if quadratic:
        cols.append(diff ** 2)
    return np.column_stack(cols)


def _solve(X: np.ndarray, y: np.ndarray, regularization: float) -> np.ndarray:
    penalty = np.eye(X.shape[1]) * regularization
    penalty[0, 0] = 0.0
    try:
        coef = linalg.solve(X.T @ X + penalty, X.T @ y)
    except (linalg.LinAlgError, ValueError) as exc:
        raise NumericInstabilityError(f"Normal equations are singular: {exc}") from exc
    if not np.all(np.isfinite(coef)):
        raise NumericInstabilityError(f"Non-finite coefficients: {coef}")
    return coef


def _clean(sample: pd.DataFrame) -> pd.DataFrame:
    df = sample[["rating_diff", "market_spread"]].apply(pd.to_numeric, errors="coerce")
    return df[np.isfinite(df).all(axis=1)]


def fit_calibration(
    sample: pd.DataFrame,
    regularization: float = 0.0,
    quadratic: bool = False,
    min_games: int = MIN_CALIBRATION_GAMES,
) -> CalibrationFit:
    if regularization < 0:
        raise ValueError("regularization must be non-negative")
    df = _clean(sample)
    n = len(df)
    if n < min_games:
        raise InsufficientSampleError("calibration games", n, min_games)

    diff = df["rating_diff"].to_numpy(dtype=float)
    y = df["market_spread"].to_numpy(dtype=float)
    X = _design(diff, quadratic)
    coef = _solve(X, y, regularization)

    resid = y - X @ coef
    ss_res = float(resid @ resid)
    ss_tot = float(((y - y.mean()) ** 2).sum())
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else float("nan")
    rmse = float(np.sqrt(ss_res / n))
    if not (np.isfinite(r2) and np.isfinite(rmse)):
        raise NumericInstabilityError(f"Non-finite fit metrics: r2={r2}, rmse={rmse}")

    fit = CalibrationFit(
        alpha          = float(coef[0]),
        beta           = float(coef[1]),
        gamma          = float(coef[2]) if quadratic else None,
        r2             = float(r2),
        rmse           = rmse,
        n_games        = n,
        regularization = float(regularization),
    )
    log.info(
        f"Calibration fit n={n} λ={regularization}: alpha={fit.alpha:.3f} "
        f"beta={fit.beta:.4f} r2={fit.r2:.3f} rmse={fit.rmse:.2f}"
    )
    return fit


def cross_validate_regularization(
    sample: pd.DataFrame,
    lambdas: Sequence[float],
    folds: int = 5,
    quadratic: bool = False,
    min_games: int = MIN_CALIBRATION_GAMES,
    seed: int = 0,
) -> Tuple[float, pd.DataFrame]:
    """
    K-fold CV over candidate ridge strengths.
    Returns (best_lambda, per-lambda table of cv_rmse).
    """
    if folds < 2:
        raise ValueError("folds must be >= 2")
    df = _clean(sample).reset_index(drop=True)
    n = len(df)
    if n < max(min_games, folds):
        raise InsufficientSampleError("calibration games", n, max(min_games, folds))

    order = np.random.default_rng(seed).permutation(n)
    splits = np.array_split(order, folds)
    diff = df["rating_diff"].to_numpy(dtype=float)
    y = df["market_spread"].to_numpy(dtype=float)
    X = _design(diff, quadratic)

    rows = []
    for lam in lambdas:
        sq_err = 0.0
        for test_idx in splits:
            train_idx = np.setdiff1d(order, test_idx)
            coef = _solve(X[train_idx], y[train_idx], lam)
            err = y[test_idx] - X[test_idx] @ coef
            sq_err += float(err @ err)
        rows.append({"lambda": float(lam), "cv_rmse": float(np.sqrt(sq_err / n))})

    results = pd.DataFrame(rows)
    best = float(results.loc[results["cv_rmse"].idxmin(), "lambda"])
    log.info(f"CV over {len(rows)} lambdas ({folds} folds): best λ={best}")
    return best, results


def suggest_calibration_factor(fit: CalibrationFit, current_factor: float) -> float:
    return current_factor * fit.beta


def main():
    from cfb_store import FrameStore

    parser = argparse.ArgumentParser(description="Fit ratings-to-market calibration")
    parser.add_argument("--seasons", type=int, nargs="+", required=True)
    parser.add_argument("--model-version", default=DEFAULT_MODEL_VERSION)
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--quadratic", action="store_true")
    parser.add_argument("--lambdas", type=float, nargs="+", default=[0.0])
    parser.add_argument("--folds", type=int, default=5)
    args = parser.parse_args()

    store = FrameStore.from_csv_dir(args.data_dir)
    config = load_model_config(args.config)
    sample = build_calibration_sample(store, args.seasons, args.model_version)
    validate_output(sample, "calibration_sample", strict=True)
    sample.to_csv(args.data_dir / "calibration_sample.csv", index=False)

    lam = args.lambdas[0]
    if len(args.lambdas) > 1:
        lam, table = cross_validate_regularization(
            sample, args.lambdas, args.folds, args.quadratic, config.min_calibration_games,
        )
        print(table.to_string(index=False))

    fit = fit_calibration(sample, lam, args.quadratic, config.min_calibration_games)
    suggested = suggest_calibration_factor(fit, config.calibration_factor)
    payload = {
        **fit.to_dict(),
        "model_version": args.model_version,
        "seasons": args.seasons,
        "current_calibration_factor": config.calibration_factor,
        "suggested_calibration_factor": suggested,
    }
    out_path = args.data_dir / "calibration_fit.json"
    with open(out_path, "w") as f:
        json.dump(payload, f, indent=2)
    log.info(f"Calibration → {out_path} (suggested factor {suggested:.3f})")


if __name__ == "__main__":
    main()
