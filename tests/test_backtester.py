"""
Tests for cfb_backtester.py — sizing, the path-dependent bankroll ledger,
as-of snapshot discipline and aggregate statistics.
"""
import json

import pandas as pd
import pytest

from cfb_backtester import (
    BacktestConfig,
    BankrollLedger,
    print_report,
    run_backtest,
    stake_fraction,
    write_outputs,
)
from cfb_config import ModelConfig
from cfb_errors import ConfigError, InvariantViolation
from cfb_store import FrameStore
from cfb_types import Game, MarketLine, Projection

SNAPSHOT = "2024-08-31T00:00:00Z"
NOW = "2025-01-15T00:00:00Z"

# Flat 5% at even money, alternating W/L from 1000
REFERENCE_PATH = [
    1050.0, 997.5, 1047.375, 995.00625, 1044.7565625,
    992.518734375, 1042.14467109375, 990.0374375390625,
    1039.539309416015625, 987.56234394521484375,
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _kickoff(i):
    return pd.Timestamp("2024-09-01T18:00:00Z") + pd.Timedelta(days=i)


def _alternating_store(n=10):
    """Model says home by 10, market home -3 ⇒ +7 edge on home every game.
    Even games home wins by 10 (covers 3), odd games tie (fails to cover)."""
    games, lines, projections = [], [], []
    for i in range(n):
        gid = f"g{i}"
        home_score = 20.0 if i % 2 == 0 else 10.0
        games.append(Game(gid, 2024, i + 1, f"H{i}", f"A{i}", kickoff=_kickoff(i),
                          status="final", home_score=home_score, away_score=10.0))
        lines.append(MarketLine(gid, "spread", -3.0, pd.Timestamp("2024-08-20T12:00:00Z")))
        projections.append(Projection(gid, "v1", pd.Timestamp("2024-08-25T12:00:00Z"), 10.0))
    return FrameStore(games=games, market_lines=lines, projections=projections)


def _single_game_store(spread=10.0, total=None, quote=-3.0, total_line=None,
                       home=20.0, away=10.0):
    game = Game("g1", 2024, 1, "H", "A", kickoff=_kickoff(0), status="final",
                home_score=home, away_score=away)
    lines = [MarketLine("g1", "spread", quote, pd.Timestamp("2024-08-20T12:00:00Z"))]
    if total_line is not None:
        lines.append(MarketLine("g1", "total", total_line, pd.Timestamp("2024-08-20T12:00:00Z")))
    proj = Projection("g1", "v1", pd.Timestamp("2024-08-25T12:00:00Z"), spread, total)
    return FrameStore(games=[game], market_lines=lines, projections=[proj])


def _config(**kw):
    params = dict(season=2024, snapshot=SNAPSHOT, markets=("spread",), now=NOW)
    params.update(kw)
    return BacktestConfig(**params)


EVEN_MONEY = ModelConfig(spread_odds=100, total_odds=100)


# ── Sizing / ledger ──────────────────────────────────────────────────────────

class TestSizing:
    def test_flat(self):
        assert stake_fraction(7.0, _config()) == 0.05

    def test_kelly(self):
        cfg = _config(bet_sizing="kelly", max_bet_fraction=0.1)
        assert stake_fraction(2.0, cfg) == pytest.approx(0.05)
        assert stake_fraction(-3.0, cfg) == pytest.approx(0.075)
        assert stake_fraction(8.0, cfg) == pytest.approx(0.1)

    def test_bad_sizing(self):
        with pytest.raises(ValueError):
            _config(bet_sizing="martingale")

    def test_from_model_config(self):
        cfg = BacktestConfig.from_model_config(2024, ModelConfig(kelly_fraction=0.5), bet_sizing="kelly")
        assert cfg.kelly_fraction == 0.5
        assert cfg.bet_sizing == "kelly"


class TestBankrollLedger:
    def test_drawdown_is_path_dependent(self):
        ledger = BankrollLedger(100.0)
        for pnl in (20.0, -30.0, 5.0, 40.0, -10.0):
            ledger.apply(pnl)
        assert ledger.path == [120.0, 90.0, 95.0, 135.0, 125.0]
        assert ledger.peak == 135.0
        assert ledger.max_drawdown == pytest.approx(30.0)

    def test_no_losses_no_drawdown(self):
        ledger = BankrollLedger(100.0)
        ledger.apply(10.0)
        assert ledger.max_drawdown == 0.0


# ── Engine ───────────────────────────────────────────────────────────────────

class TestRunBacktest:
    def test_alternating_flat_reference(self):
        results = run_backtest(_alternating_store(), _config(), EVEN_MONEY)

        assert results.total_bets == 10
        assert results.bankroll_path == pytest.approx(REFERENCE_PATH)
        assert results.final_bankroll == pytest.approx(REFERENCE_PATH[-1])
        assert results.peak_bankroll == pytest.approx(1050.0)
        assert results.max_drawdown == pytest.approx(1050.0 - REFERENCE_PATH[-1])
        assert (results.wins, results.losses, results.pushes) == (5, 5, 0)
        assert results.hit_rate == pytest.approx(0.5)
        assert results.total_pnl == pytest.approx(REFERENCE_PATH[-1] - 1000.0)
        assert results.roi == pytest.approx(results.total_pnl / results.total_staked)
        assert results.avg_clv == pytest.approx(0.0)

        bets = results.bets
        assert list(bets["side"].unique()) == ["home"]
        assert list(bets["tier"].unique()) == ["A"]
        assert bets["stake"].iloc[0] == pytest.approx(50.0)
        assert bets["stake"].iloc[1] == pytest.approx(52.5)
        assert bets["bankroll_after"].tolist() == pytest.approx(REFERENCE_PATH)

    def test_tier_breakdown(self):
        results = run_backtest(_alternating_store(4), _config(), EVEN_MONEY)
        tiers = results.tiers.set_index("tier")
        assert tiers.loc["A", "bets"] == 4
        assert tiers.loc["A", "hit_rate"] == pytest.approx(0.5)

    def test_pushes_excluded_from_hit_rate(self):
        # home wins by 3 against a 3-point line ⇒ push
        results = run_backtest(_single_game_store(home=13.0, away=10.0), _config(), EVEN_MONEY)
        assert results.pushes == 1
        assert results.hit_rate == 0.0
        assert results.total_pnl == 0.0
        assert results.final_bankroll == 1000.0

    def test_projection_after_snapshot_is_ignored(self):
        store = _single_game_store(spread=3.5)
        store.upsert_projection(Projection("g1", "v1", pd.Timestamp("2024-09-01T12:00:00Z"), 20.0))

        frozen = run_backtest(store, _config(), EVEN_MONEY)
        assert frozen.total_bets == 0
        assert frozen.skipped["below_threshold"] == 1

        at_kickoff = run_backtest(store, _config(snapshot=None), EVEN_MONEY)
        assert at_kickoff.total_bets == 1

    def test_line_after_snapshot_is_ignored(self):
        store = _single_game_store()
        store.append_market_line(MarketLine("g1", "spread", -9.0, pd.Timestamp("2024-09-01T12:00:00Z")))
        results = run_backtest(store, _config(), EVEN_MONEY)
        row = results.bets.iloc[0]
        assert row["model_price"] == pytest.approx(3.0)
        # settled and CLV measured against the later close
        assert row["close_price"] == pytest.approx(9.0)
        assert row["clv"] == pytest.approx(6.0)
        assert row["result"] == "win"

    def test_no_projection_skips_game(self):
        store = _single_game_store()
        results = run_backtest(store, _config(model_version="v2"), EVEN_MONEY)
        assert results.total_bets == 0
        assert results.skipped["no_projection"] == 1

    def test_min_tier_and_min_edge(self):
        store = _alternating_store(2)
        store.upsert_projection(Projection("g1", "v1", pd.Timestamp("2024-08-26T12:00:00Z"), 5.5))
        assert run_backtest(store, _config(min_tier="B"), EVEN_MONEY).total_bets == 1
        assert run_backtest(store, _config(min_edge=5.0), EVEN_MONEY).total_bets == 1
        assert run_backtest(store, _config(), EVEN_MONEY).total_bets == 2

    def test_unknown_min_tier_is_rejected(self):
        store = _single_game_store()
        with pytest.raises(ConfigError, match="min_tier 'a'"):
            run_backtest(store, _config(min_tier="a"), EVEN_MONEY)
        assert run_backtest(store, _config(min_tier="A"), EVEN_MONEY).total_bets == 1

    def test_missing_model_total_counted_separately(self):
        store = _single_game_store(total=None, total_line=52.0)
        results = run_backtest(store, _config(markets=("spread", "total")), EVEN_MONEY)
        assert results.total_bets == 1
        assert results.skipped["no_model_value"] == 1
        assert results.skipped["no_market_line"] == 0

    def test_kelly_stake(self):
        store = _single_game_store(spread=6.0)
        results = run_backtest(store, _config(bet_sizing="kelly", max_bet_fraction=0.1), EVEN_MONEY)
        assert results.bets["stake"].iloc[0] == pytest.approx(1000.0 * 3.0 / 10.0 * 0.25)

    def test_totals_market(self):
        store = _single_game_store(total=58.0, total_line=52.0, home=35.0, away=25.0)
        results = run_backtest(store, _config(markets=("total",)), EVEN_MONEY)
        row = results.bets.iloc[0]
        assert row["side"] == "over"
        assert row["result"] == "win"
        assert row["edge"] == pytest.approx(6.0)

    def test_ungraded_future_game_not_counted(self):
        store = _single_game_store()
        results = run_backtest(store, _config(now="2024-09-01T00:00:00Z"), EVEN_MONEY)
        assert results.total_bets == 0
        assert results.skipped["not_gradable"] == 1

    def test_sign_check_halts_run(self):
        store = _single_game_store(spread=10.0, quote=8.0)
        with pytest.raises(InvariantViolation):
            run_backtest(store, _config(sign_check=True), EVEN_MONEY)
        assert run_backtest(store, _config(), EVEN_MONEY).total_bets == 1


# ── Outputs ──────────────────────────────────────────────────────────────────

class TestOutputs:
    def test_write_outputs(self, tmp_path):
        results = run_backtest(_alternating_store(), _config(), EVEN_MONEY)
        outputs = write_outputs(results, tmp_path)

        bets = pd.read_csv(outputs["bets"])
        assert len(bets) == 10
        summary = json.loads(outputs["summary"].read_text())
        assert summary["total_bets"] == 10
        assert summary["config"]["season"] == 2024
        assert outputs["tiers"].exists()

    def test_print_report(self, capsys):
        results = run_backtest(_alternating_store(), _config(), EVEN_MONEY)
        print_report(results)
        out = capsys.readouterr().out
        assert "BACKTEST" in out
        assert "5-5-0" in out

    def test_empty_backtest(self, tmp_path):
        results = run_backtest(FrameStore(), _config(), EVEN_MONEY)
        assert results.total_bets == 0
        assert results.final_bankroll == 1000.0
        write_outputs(results, tmp_path)
        print_report(results)
