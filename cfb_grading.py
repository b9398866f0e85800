#!/usr/bin/env python3
"""
cfb_grading.py — Bet grading, payouts and closing line value

A bet moves one way only: ungraded → graded (win / loss / push). Grading
happens once the game is final with both scores, kickoff is in the past and
a closing price is known. Re-running the grader never rewrites a graded bet.

RULES
─────────────────────────────────────────────────────────────────────────────
  Spread and total bets are settled against the closing line.
  Spread (closing line L in HMA frame, home favored by L):
      home: diff = margin - L          away: diff = L - margin
  Total (line T):
      over: diff = total - T           under: diff = T - total
  |diff| < push_tolerance ⇒ push, diff > 0 ⇒ win, else loss.
  Moneyline: tie ⇒ push, otherwise the side that won.

  Spread/total payouts use the configured odds (default -110); moneyline
  payouts use the price taken (Bet.model_price).

CLV (positive = we beat the close):
  home / over   : close - taken
  away / under  : taken - close
  moneyline     : implied_prob(close) - implied_prob(taken)

Usage:
    python cfb_grading.py                       # grade everything gradable now
    python cfb_grading.py --now 2024-11-30T12:00:00Z
"""

import argparse
import logging
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from cfb_config import DATA_DIR, ModelConfig, load_model_config
from cfb_output_schemas import validate_output
from cfb_spreads import quote_to_hma
from cfb_store import to_utc
from cfb_types import Bet, Game

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# ODDS
# ═══════════════════════════════════════════════════════════════════════════════

def _check_odds(odds: float) -> None:
    if -100 < odds < 100:
        raise ValueError(f"American odds must be <= -100 or >= +100, got {odds}")


def american_payout(stake: float, odds: float) -> float:
    """Profit on a winning bet (stake not included)."""
    _check_odds(odds)
    if odds < 0:
        return stake * 100.0 / abs(odds)
    return stake * odds / 100.0


def implied_probability(odds: float) -> float:
    _check_odds(odds)
    if odds < 0:
        return abs(odds) / (abs(odds) + 100.0)
    return 100.0 / (odds + 100.0)


# ═══════════════════════════════════════════════════════════════════════════════
# OUTCOMES
# ═══════════════════════════════════════════════════════════════════════════════

def _result_from_diff(diff: float, push_tolerance: float) -> str:
    if abs(diff) < push_tolerance:
        return "push"
    return "win" if diff > 0 else "loss"


def grade_spread_total(market_type: str, side: str, line: float,
                       home_score: float, away_score: float,
                       push_tolerance: float = 0.5) -> str:
    if market_type == "spread":
        margin = home_score - away_score
        if side == "home":
            diff = margin - line
        elif side == "away":
            diff = line - margin
        else:
            raise ValueError(f"Spread bet side must be home/away, got {side!r}")
    elif market_type == "total":
        total = home_score + away_score
        if side == "over":
            diff = total - line
        elif side == "under":
            diff = line - total
        else:
            raise ValueError(f"Total bet side must be over/under, got {side!r}")
    else:
        raise ValueError(f"Not a spread/total market: {market_type!r}")
    return _result_from_diff(diff, push_tolerance)


def grade_moneyline(side: str, home_score: float, away_score: float) -> str:
    margin = home_score - away_score
    if margin == 0:
        return "push"
    if side not in ("home", "away"):
        raise ValueError(f"Moneyline bet side must be home/away, got {side!r}")
    home_won = margin > 0
    return "win" if home_won == (side == "home") else "loss"


def compute_pnl(result: str, stake: float, odds: float) -> float:
    if result == "win":
        return american_payout(stake, odds)
    if result == "loss":
        return -stake
    return 0.0


def compute_clv(market_type: str, side: str, taken: Optional[float],
                close: Optional[float]) -> Optional[float]:
    if taken is None or close is None:
        return None
    if market_type == "moneyline":
        return implied_probability(close) - implied_probability(taken)
    if side in ("home", "over"):
        return close - taken
    return taken - close


def is_gradable(game: Optional[Game], now) -> bool:
    if game is None or not game.is_final or game.kickoff is None:
        return False
    return game.kickoff < to_utc(now)


def _payout_odds(bet: Bet, config: ModelConfig) -> float:
    if bet.market_type == "spread":
        return config.spread_odds
    if bet.market_type == "total":
        return config.total_odds
    return bet.model_price


def grade_bet(bet: Bet, game: Optional[Game], now, config: Optional[ModelConfig] = None) -> Bet:
    """
    Pure: returns a graded copy, or `bet` itself when it is already graded,
    the game is not gradable yet, or the closing price is unknown.
    """
    if bet.is_graded or bet.close_price is None or not is_gradable(game, now):
        return bet
    config = config or ModelConfig()

    if bet.market_type == "moneyline":
        result = grade_moneyline(bet.side, game.home_score, game.away_score)
    else:
        result = grade_spread_total(bet.market_type, bet.side, bet.close_price,
                                    game.home_score, game.away_score,
                                    config.push_tolerance)
    return replace(
        bet,
        result=result,
        pnl=compute_pnl(result, bet.stake, _payout_odds(bet, config)),
        clv=compute_clv(bet.market_type, bet.side, bet.model_price, bet.close_price),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# BATCH GRADING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class GradeCounts:
    graded:          int = 0
    not_gradable:    int = 0
    already_graded:  int = 0
    missing_game:    int = 0
    missing_close:   int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


def closing_price(store, bet: Bet, game: Game) -> Optional[float]:
    """Last quote at or before kickoff, else the closing line, in bet units."""
    side = bet.side if bet.market_type == "moneyline" else None
    line = None
    if game.kickoff is not None:
        line = store.get_market_line_as_of(bet.game_id, bet.market_type, game.kickoff, side=side)
    if line is None:
        line = store.get_closing_line(bet.game_id, bet.market_type, side=side)
    if line is None:
        return None
    if bet.market_type == "spread":
        return quote_to_hma(line.line_value)
    return line.line_value


def grade_pending_bets(store, now=None, config: Optional[ModelConfig] = None) -> GradeCounts:
    config = config or ModelConfig()
    now = to_utc(now if now is not None else pd.Timestamp.now(tz="UTC"))
    counts = GradeCounts()

    for bet in store.get_bets(graded=False):
        game = store.get_game(bet.game_id)
        if game is None:
            counts.missing_game += 1
            log.warning(f"Bet {bet.bet_id}: game {bet.game_id} not found")
            continue
        if not is_gradable(game, now):
            counts.not_gradable += 1
            continue

        if bet.close_price is None:
            close = closing_price(store, bet, game)
            if close is None:
                counts.missing_close += 1
                log.warning(f"Bet {bet.bet_id}: no closing {bet.market_type} line — left ungraded")
                continue
            bet = replace(bet, close_price=close)

        graded = grade_bet(bet, game, now, config)
        if store.update_bet_result(graded.bet_id, graded.result, graded.pnl,
                                   graded.clv, graded.close_price):
            counts.graded += 1
        else:
            counts.already_graded += 1

    log.info(
        f"Grading: {counts.graded} graded, {counts.not_gradable} not final, "
        f"{counts.missing_game} missing game, {counts.missing_close} awaiting a close"
    )
    return counts


def main():
    from cfb_store import FrameStore

    parser = argparse.ArgumentParser(description="Grade pending CFB bets")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--now", type=str, default=None,
                        help="Grade as of this UTC timestamp (default: now)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Grade in memory but don't write bets.csv")
    args = parser.parse_args()

    store = FrameStore.from_csv_dir(args.data_dir)
    config = load_model_config(args.config)
    counts = grade_pending_bets(store, args.now, config)
    print(counts.to_dict())

    if not args.dry_run:
        bets = store.bets_frame()
        validate_output(bets, "bets", strict=True)
        bets.to_csv(args.data_dir / "bets.csv", index=False)


if __name__ == "__main__":
    main()
