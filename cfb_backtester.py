#!/usr/bin/env python3
"""
cfb_backtester.py — Historical betting-strategy backtester

Replays a season as if bets had been placed at a fixed moment, using ONLY
what existed at that moment.

THE LEAKAGE PROBLEM (and how we solve it)
─────────────────────────────────────────────────────────────────────────────
Ratings and projections are recomputed all season. Grabbing "the" projection
for game G after the fact picks up information from games played after the
bet would have been placed.

Instead every lookup is "as of" the snapshot:
  - projection : latest Projection with created_at <= snapshot
  - market     : latest MarketLine  with timestamp  <= snapshot
With no fixed snapshot, each game is frozen at its own kickoff.

The bet is then settled against the closing line and the final score, and the
bankroll is updated in kickoff order. Stakes are a fraction of the running
bankroll, so drawdown and ROI compound and depend on ordering.

OUTPUTS
─────────────────────────────────────────────────────────────────────────────
data/backtest_bets_<season>_<version>.csv     — one row per simulated bet
data/backtest_tiers_<season>_<version>.csv    — per-tier breakdown
data/backtest_summary_<season>_<version>.json — aggregate statistics

METRICS COMPUTED
─────────────────────────────────────────────────────────────────────────────
Hit rate    : wins / (wins + losses), pushes excluded
ROI         : total PnL / total staked
CLV         : mean closing line value (positive = beat the close)
Max DD      : largest peak-to-current bankroll drop along the bet sequence

Usage:
    python cfb_backtester.py --season 2024 --snapshot 2024-10-01T00:00:00Z
    python cfb_backtester.py --season 2024 --bet-sizing kelly --min-tier B
"""

import argparse
import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from cfb_config import (
    DATA_DIR, DEFAULT_MODEL_VERSION, VIG_BREAK_EVEN, ModelConfig, load_model_config,
)
from cfb_edges import evaluate_edge, meets_minimum_tier
from cfb_errors import ConfigError
from cfb_grading import grade_bet
from cfb_output_schemas import validate_output
from cfb_spreads import check_sign_consensus, quote_to_hma
from cfb_store import to_utc
from cfb_types import Bet

log = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

BET_COLUMNS = [
    "bet_id", "game_id", "season", "week", "kickoff", "market_type", "side",
    "model_value", "model_price", "close_price", "edge", "tier",
    "stake", "result", "pnl", "clv", "bankroll_after",
]


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG & DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class BacktestConfig:
    """Controls backtest behavior."""
    season:                   int
    snapshot:                 Optional[str] = None   # None ⇒ freeze each game at kickoff
    model_version:            str   = DEFAULT_MODEL_VERSION
    markets:                  Tuple[str, ...] = ("spread", "total")
    min_edge:                 float = 0.0
    min_tier:                 Optional[str] = None   # None ⇒ any tier
    bet_sizing:               str   = "flat"         # "flat" or "kelly"
    flat_fraction:            float = 0.05
    kelly_fraction:           float = 0.25
    max_bet_fraction:         float = 0.05
    reference_line_magnitude: float = 10.0
    initial_bankroll:         float = 1000.0
    now:                      Optional[str] = None   # grading clock, default: wall clock
    sign_check:               bool  = False

    def __post_init__(self):
        if self.bet_sizing not in ("flat", "kelly"):
            raise ValueError(f"bet_sizing must be 'flat' or 'kelly', got {self.bet_sizing!r}")
        if self.initial_bankroll <= 0:
            raise ValueError("initial_bankroll must be positive")
        self.markets = tuple(self.markets)

    @classmethod
    def from_model_config(cls, season: int, model_config: ModelConfig, **overrides) -> "BacktestConfig":
        params = dict(
            flat_fraction            = model_config.flat_bet_fraction,
            kelly_fraction           = model_config.kelly_fraction,
            max_bet_fraction         = model_config.max_bet_fraction,
            reference_line_magnitude = model_config.reference_line_magnitude,
        )
        params.update(overrides)
        return cls(season=season, **params)


def stake_fraction(edge: float, config: BacktestConfig) -> float:
    """Share of the current bankroll to risk on a bet with this edge."""
    if config.bet_sizing == "kelly":
        kelly = abs(edge) / config.reference_line_magnitude * config.kelly_fraction
        return min(kelly, config.max_bet_fraction)
    return config.flat_fraction


class BankrollLedger:
    """Running bankroll with path-dependent peak and drawdown."""

    def __init__(self, initial: float):
        self.initial = float(initial)
        self.bankroll = float(initial)
        self.peak = float(initial)
        self.max_drawdown = 0.0
        self.path: List[float] = []

    def stake(self, fraction: float) -> float:
        return self.bankroll * fraction

    def apply(self, pnl: float) -> float:
        self.bankroll += pnl
        self.peak = max(self.peak, self.bankroll)
        self.max_drawdown = max(self.max_drawdown, self.peak - self.bankroll)
        self.path.append(self.bankroll)
        return self.bankroll


@dataclass
class BacktestResults:
    config:         BacktestConfig
    bets:           pd.DataFrame
    total_bets:     int   = 0
    wins:           int   = 0
    losses:         int   = 0
    pushes:         int   = 0
    hit_rate:       float = 0.0
    total_staked:   float = 0.0
    total_pnl:      float = 0.0
    roi:            float = 0.0
    avg_clv:        float = 0.0
    max_drawdown:   float = 0.0
    peak_bankroll:  float = 0.0
    final_bankroll: float = 0.0
    bankroll_path:  List[float] = field(default_factory=list)
    tiers:          pd.DataFrame = field(default_factory=pd.DataFrame)
    skipped:        Dict[str, int] = field(default_factory=dict)

    def summary_dict(self) -> Dict:
        out = {k: v for k, v in self.__dict__.items()
               if k not in ("config", "bets", "tiers", "bankroll_path")}
        out["config"] = asdict(self.config)
        return out


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATES
# ═══════════════════════════════════════════════════════════════════════════════

def _counts(df: pd.DataFrame) -> Dict:
    wins = int((df["result"] == "win").sum())
    losses = int((df["result"] == "loss").sum())
    pushes = int((df["result"] == "push").sum())
    staked = float(df["stake"].sum())
    pnl = float(df["pnl"].sum())
    clv = pd.to_numeric(df["clv"], errors="coerce").dropna()
    return {
        "bets":     int(len(df)),
        "wins":     wins,
        "losses":   losses,
        "pushes":   pushes,
        "hit_rate": wins / (wins + losses) if wins + losses else 0.0,
        "staked":   staked,
        "pnl":      pnl,
        "roi":      pnl / staked if staked else 0.0,
        "avg_clv":  float(clv.mean()) if len(clv) else 0.0,
    }


def tier_breakdown(bets: pd.DataFrame) -> pd.DataFrame:
    if bets.empty:
        return pd.DataFrame(columns=["tier", "bets", "wins", "losses", "pushes",
                                     "hit_rate", "staked", "pnl", "roi", "avg_clv"])
    rows = [{"tier": tier, **_counts(group)} for tier, group in bets.groupby("tier", sort=True)]
    return pd.DataFrame(rows)


def summarize(bets: pd.DataFrame, ledger: BankrollLedger, config: BacktestConfig,
              skipped: Optional[Dict[str, int]] = None) -> BacktestResults:
    c = _counts(bets) if not bets.empty else _counts(pd.DataFrame(columns=BET_COLUMNS))
    return BacktestResults(
        config         = config,
        bets           = bets,
        total_bets     = c["bets"],
        wins           = c["wins"],
        losses         = c["losses"],
        pushes         = c["pushes"],
        hit_rate       = c["hit_rate"],
        total_staked   = c["staked"],
        total_pnl      = c["pnl"],
        roi            = c["roi"],
        avg_clv        = c["avg_clv"],
        max_drawdown   = ledger.max_drawdown,
        peak_bankroll  = ledger.peak,
        final_bankroll = ledger.bankroll,
        bankroll_path  = list(ledger.path),
        tiers          = tier_breakdown(bets),
        skipped        = dict(skipped or {}),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

def _market_inputs(store, game, market: str, projection, as_of):
    """(model value, market value at snapshot, closing value), all in the bet's units."""
    line = store.get_market_line_as_of(game.game_id, market, as_of)
    close = store.get_closing_line(game.game_id, market)
    if market == "spread":
        model = projection.model_spread
        taken = quote_to_hma(line.line_value) if line is not None else None
        closing = quote_to_hma(close.line_value) if close is not None else None
    else:
        model = projection.model_total
        taken = line.line_value if line is not None else None
        closing = close.line_value if close is not None else None
    return model, taken, closing


def run_backtest(store, config: BacktestConfig,
                 model_config: Optional[ModelConfig] = None) -> BacktestResults:
    model_config = model_config or ModelConfig()
    if config.min_tier is not None and config.min_tier not in model_config.tier_thresholds:
        raise ConfigError(
            f"min_tier {config.min_tier!r} is not a configured tier "
            f"(expected one of {sorted(model_config.tier_thresholds)})"
        )
    now = to_utc(config.now) if config.now is not None else pd.Timestamp.now(tz="UTC")
    snapshot = to_utc(config.snapshot) if config.snapshot is not None else None

    games = store.get_completed_games(config.season, neutral_site=None)
    ledger = BankrollLedger(config.initial_bankroll)
    skipped = {"no_projection": 0, "no_model_value": 0, "no_market_line": 0,
               "below_threshold": 0, "no_closing_line": 0, "not_gradable": 0}
    rows = []

    log.info(
        f"Backtesting {len(games)} completed {config.season} games "
        f"({config.model_version}, snapshot={snapshot if snapshot is not None else 'kickoff'}, "
        f"sizing={config.bet_sizing})"
    )

    for game in games:
        as_of = snapshot if snapshot is not None else game.kickoff
        if as_of is None:
            skipped["no_projection"] += 1
            continue
        projection = store.get_projection_as_of(game.game_id, config.model_version, as_of)
        if projection is None:
            skipped["no_projection"] += 1
            continue

        for market in config.markets:
            model, taken, closing = _market_inputs(store, game, market, projection, as_of)
            if model is None:
                skipped["no_model_value"] += 1
                continue
            if taken is None:
                skipped["no_market_line"] += 1
                continue
            if market == "spread" and config.sign_check:
                check_sign_consensus(model, taken, model_config.sign_check_tolerance, game.game_id)

            result = evaluate_edge(model, taken, model_config.tier_thresholds, market)
            if (result is None or abs(result.edge) < config.min_edge
                    or not meets_minimum_tier(result.tier, config.min_tier,
                                              model_config.tier_thresholds)):
                skipped["below_threshold"] += 1
                continue
            if closing is None:
                skipped["no_closing_line"] += 1
                continue

            bet = Bet(
                bet_id        = f"bt-{config.season}-{game.game_id}-{market}",
                game_id       = game.game_id,
                season        = game.season,
                week          = game.week,
                market_type   = market,
                side          = result.pick,
                model_price   = taken,
                stake         = ledger.stake(stake_fraction(result.edge, config)),
                close_price   = closing,
                edge          = result.edge,
                tier          = result.tier,
                model_version = config.model_version,
                strategy      = f"backtest_{config.bet_sizing}",
                created_at    = as_of,
            )
            graded = grade_bet(bet, game, now, model_config)
            if not graded.is_graded:
                skipped["not_gradable"] += 1
                continue

            bankroll = ledger.apply(graded.pnl)
            rows.append({
                **{k: v for k, v in graded.to_dict().items() if k in BET_COLUMNS},
                "kickoff":        game.kickoff,
                "model_value":    model,
                "bankroll_after": bankroll,
            })

    bets = pd.DataFrame(rows, columns=BET_COLUMNS)
    results = summarize(bets, ledger, config, skipped)
    log.info(
        f"{results.total_bets} bets  W-L-P {results.wins}-{results.losses}-{results.pushes}  "
        f"ROI {results.roi:+.2%}  final bankroll {results.final_bankroll:,.2f}"
    )
    return results


# ═══════════════════════════════════════════════════════════════════════════════
# REPORTING
# ═══════════════════════════════════════════════════════════════════════════════

def print_report(results: BacktestResults) -> None:
    """Print backtest summary to stdout."""
    cfg = results.config
    print()
    print("=" * 80)
    print(f"  BACKTEST — {cfg.season} {cfg.model_version}  |  sizing: {cfg.bet_sizing}"
          f"  |  snapshot: {cfg.snapshot or 'kickoff'}")
    print(f"  {results.total_bets:,} bets  |  skipped: "
          + ", ".join(f"{k}={v}" for k, v in results.skipped.items() if v))
    print("=" * 80)
    flag = " ⚡" if results.hit_rate * 100 > VIG_BREAK_EVEN else ""
    print(f"  Record         : {results.wins}-{results.losses}-{results.pushes}")
    print(f"  Hit rate       : {results.hit_rate:.1%}{flag}")
    print(f"  Staked / PnL   : {results.total_staked:,.2f} / {results.total_pnl:+,.2f}")
    print(f"  ROI            : {results.roi:+.2%}")
    print(f"  Avg CLV        : {results.avg_clv:+.2f}")
    print(f"  Max drawdown   : {results.max_drawdown:,.2f}")
    print(f"  Bankroll       : {cfg.initial_bankroll:,.2f} → {results.final_bankroll:,.2f}"
          f"  (peak {results.peak_bankroll:,.2f})")

    if not results.tiers.empty:
        print("  " + "-" * 76)
        print(f"  {'TIER':<6} {'N':>5} {'W-L-P':>10} {'HIT%':>7} {'ROI':>8} {'CLV':>7}")
        for _, row in results.tiers.iterrows():
            wlp = f"{int(row['wins'])}-{int(row['losses'])}-{int(row['pushes'])}"
            print(f"  {str(row['tier']):<6} {int(row['bets']):>5} {wlp:>10} "
                  f"{float(row['hit_rate']) * 100:>6.1f}% {float(row['roi']):>+8.2%} "
                  f"{float(row['avg_clv']):>+7.2f}")
    print("  " + "=" * 76)
    print(f"  Break-even at -110 juice: {VIG_BREAK_EVEN:.2f}%  |  ⚡ = beats vig")
    print()


def write_outputs(results: BacktestResults, output_dir: Path = DATA_DIR) -> Dict[str, Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    tag = f"{results.config.season}_{results.config.model_version}"
    outputs = {}

    validate_output(results.bets, "backtest_bets", strict=True)
    bets_path = output_dir / f"backtest_bets_{tag}.csv"
    results.bets.to_csv(bets_path, index=False)
    outputs["bets"] = bets_path
    log.info(f"Bets    → {bets_path}  ({len(results.bets):,} rows)")

    tiers_path = output_dir / f"backtest_tiers_{tag}.csv"
    results.tiers.to_csv(tiers_path, index=False)
    outputs["tiers"] = tiers_path

    summary_path = output_dir / f"backtest_summary_{tag}.json"
    with open(summary_path, "w") as f:
        json.dump(results.summary_dict(), f, indent=2, default=str)
    outputs["summary"] = summary_path
    log.info(f"Summary → {summary_path}")

    return outputs


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    from cfb_store import FrameStore

    parser = argparse.ArgumentParser(description="CFB betting-strategy backtester")
    parser.add_argument("--season",        type=int, required=True)
    parser.add_argument("--snapshot",      type=str, default=None,
                        help="ISO timestamp to freeze projections/lines at (default: kickoff)")
    parser.add_argument("--model-version", default=DEFAULT_MODEL_VERSION)
    parser.add_argument("--markets",       nargs="+", default=["spread", "total"],
                        choices=["spread", "total"])
    parser.add_argument("--min-edge",      type=float, default=0.0)
    parser.add_argument("--min-tier",      type=str, default=None)
    parser.add_argument("--bet-sizing",    choices=["flat", "kelly"], default="flat")
    parser.add_argument("--initial-bankroll", type=float, default=1000.0)
    parser.add_argument("--sign-check",    action="store_true",
                        help="Abort on model/market favorite disagreements")
    parser.add_argument("--data-dir",      type=Path, default=DATA_DIR)
    parser.add_argument("--output-dir",    type=Path, default=DATA_DIR)
    parser.add_argument("--config",        type=Path, default=None)
    args = parser.parse_args()

    model_config = load_model_config(args.config)
    config = BacktestConfig.from_model_config(
        args.season, model_config,
        snapshot         = args.snapshot,
        model_version    = args.model_version,
        markets          = tuple(args.markets),
        min_edge         = args.min_edge,
        min_tier         = args.min_tier,
        bet_sizing       = args.bet_sizing,
        initial_bankroll = args.initial_bankroll,
        sign_check       = args.sign_check,
    )

    store = FrameStore.from_csv_dir(args.data_dir)
    results = run_backtest(store, config, model_config)
    print_report(results)
    write_outputs(results, args.output_dir)


if __name__ == "__main__":
    main()
