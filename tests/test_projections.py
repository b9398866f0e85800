"""
Tests for cfb_projections.py — per-game snapshots, as-of market inputs and
the ratings → HFA → projections → backtest chain.
"""
import pandas as pd
import pytest

from cfb_backtester import BacktestConfig, run_backtest
from cfb_config import ModelConfig
from cfb_hfa import HfaConfig, HfaTeamAdjustment, train_hfa
from cfb_projections import generate_projections
from cfb_ratings import compute_ratings
from cfb_store import FrameStore, to_utc
from cfb_types import Game, MarketLine, TeamSeasonRating, TeamSeasonStat

CREATED = "2024-08-25T00:00:00Z"


# ── Helpers ──────────────────────────────────────────────────────────────────

def _ts(s):
    return pd.Timestamp(s, tz="UTC")


def _game(gid, home, away, day=7, neutral=False, status="scheduled",
          home_score=None, away_score=None, week=1):
    return Game(gid, 2024, week, home, away, neutral_site=neutral,
                kickoff=_ts(f"2024-09-{day:02d}T18:00:00"), status=status,
                home_score=home_score, away_score=away_score)


def _ratings(**powers):
    return [TeamSeasonRating(t, 2024, "v1", power_rating=p, confidence=0.8)
            for t, p in powers.items()]


def _hfa(**adjustments):
    return HfaConfig(
        base_hfa_points=2.0, clip_min=0.5, clip_max=3.5, shrinkage_k=8.0,
        team_adjustments={t: HfaTeamAdjustment(a, 20, a, 1.0) for t, a in adjustments.items()},
    )


def _stat(team_id, good):
    if good:
        metrics = dict(ypp_off=7.0, pass_ypa_off=9.0, rush_ypc_off=5.5, success_off=0.50,
                       epa_off=0.30, ypp_def=4.5, pass_ypa_def=6.0, rush_ypc_def=3.5,
                       success_def=0.35, epa_def=-0.10, talent_composite=900.0)
    else:
        metrics = dict(ypp_off=5.0, pass_ypa_off=6.5, rush_ypc_off=4.0, success_off=0.40,
                       epa_off=0.05, ypp_def=6.5, pass_ypa_def=8.0, rush_ypc_def=5.0,
                       success_def=0.45, epa_def=0.15, talent_composite=600.0)
    return TeamSeasonStat(team_id, 2024, games_played=12, data_source="game", **metrics)


# ── Snapshots ────────────────────────────────────────────────────────────────

class TestGenerateProjections:
    def test_spread_and_total_from_lines(self):
        store = FrameStore(
            games=[_game("g1", "A", "B")],
            ratings=_ratings(A=10.0, B=4.0),
            market_lines=[
                MarketLine("g1", "spread", -3.0, _ts("2024-08-20T12:00:00")),
                MarketLine("g1", "total", 50.0, _ts("2024-08-20T12:00:00")),
            ],
        )
        [proj] = generate_projections(store, 2024, _hfa(A=1.0), created_at=CREATED)

        # 10 - 4 + 3 = 9; overlay 0.35 * (9 - 3) = 2.1
        assert proj.model_spread == pytest.approx(9.0)
        assert proj.model_total == pytest.approx(52.1)
        assert proj.confidence == pytest.approx(0.8)
        assert proj.created_at == to_utc(CREATED)

        stored = store.get_projection_as_of("g1", "v1", CREATED)
        assert stored.model_spread == pytest.approx(9.0)
        assert stored.model_total == pytest.approx(52.1)

    def test_no_total_line_leaves_total_empty(self):
        store = FrameStore(
            games=[_game("g1", "A", "B")],
            ratings=_ratings(A=10.0, B=4.0),
            market_lines=[MarketLine("g1", "spread", -3.0, _ts("2024-08-20T12:00:00"))],
        )
        [proj] = generate_projections(store, 2024, created_at=CREATED)
        assert proj.model_spread == pytest.approx(8.0)
        assert proj.model_total is None

    def test_lines_after_created_at_are_ignored(self):
        store = FrameStore(
            games=[_game("g1", "A", "B")],
            ratings=_ratings(A=10.0, B=4.0),
            market_lines=[
                MarketLine("g1", "spread", -3.0, _ts("2024-08-20T12:00:00")),
                MarketLine("g1", "total", 50.0, _ts("2024-08-20T12:00:00")),
                MarketLine("g1", "spread", -12.0, _ts("2024-09-01T12:00:00")),
                MarketLine("g1", "total", 60.0, _ts("2024-09-01T12:00:00")),
            ],
        )
        [proj] = generate_projections(store, 2024, created_at=CREATED)
        # 0.35 * (8 - 3) = 1.75 against the August quotes
        assert proj.model_total == pytest.approx(51.75)

    def test_neutral_site_has_no_hfa(self):
        store = FrameStore(games=[_game("g1", "A", "B", neutral=True)],
                           ratings=_ratings(A=10.0, B=4.0))
        [proj] = generate_projections(store, 2024, _hfa(A=1.0), created_at=CREATED)
        assert proj.model_spread == pytest.approx(6.0)

    def test_runs_append_snapshots(self):
        store = FrameStore(games=[_game("g1", "A", "B")], ratings=_ratings(A=10.0, B=4.0))
        generate_projections(store, 2024, created_at=CREATED)
        store.upsert_team_season_rating(TeamSeasonRating("A", 2024, "v1", power_rating=20.0))
        generate_projections(store, 2024, created_at="2024-09-01T00:00:00Z")

        assert len(store.projections) == 2
        assert store.get_projection_as_of("g1", "v1", CREATED).model_spread == pytest.approx(8.0)
        assert store.get_projection_as_of("g1", "v1", "2024-09-02").model_spread == pytest.approx(18.0)

    def test_only_requested_season(self):
        other = Game("old", 2023, 1, "A", "B", kickoff=_ts("2023-09-07T18:00:00"))
        store = FrameStore(games=[_game("g1", "A", "B"), other], ratings=_ratings(A=10.0, B=4.0))
        projections = generate_projections(store, 2024, created_at=CREATED)
        assert [p.game_id for p in projections] == ["g1"]


# ── Pipeline ─────────────────────────────────────────────────────────────────

class TestPipeline:
    def _store(self):
        games = [
            _game("w1", "A", "B", day=7, week=1, status="final", home_score=45.0, away_score=15.0),
            _game("w2", "B", "A", day=14, week=2, status="final", home_score=10.0, away_score=34.0),
            _game("w3", "A", "B", day=21, week=3, status="final", home_score=45.0, away_score=15.0),
            _game("w4", "B", "A", day=28, week=4, status="final", home_score=10.0, away_score=34.0),
        ]
        lines = []
        for g in games:
            quote = -20.0 if g.home_team_id == "A" else 20.0
            lines.append(MarketLine(g.game_id, "spread", quote, _ts("2024-08-20T12:00:00")))
            lines.append(MarketLine(g.game_id, "total", 50.0, _ts("2024-08-20T12:00:00")))
        return FrameStore(stats=[_stat("A", True), _stat("B", False)],
                          games=games, market_lines=lines)

    def test_ratings_hfa_projections_backtest(self):
        store = self._store()
        compute_ratings(store, 2024)
        assert store.get_team_season_rating("A", 2024, "v1").power_rating == pytest.approx(13.325)

        # A home: 30 - (26.65 + 2) = 1.35 over 2 games; B home: -24 - (-26.65 + 2) = 0.65
        hfa = train_hfa(store, [2024], version="e2e")
        assert hfa.team_adjustments["A"].adjustment == pytest.approx(0.27)
        assert hfa.team_adjustments["B"].adjustment == pytest.approx(0.13)

        projections = {p.game_id: p for p in generate_projections(store, 2024, hfa, created_at=CREATED)}
        assert projections["w1"].model_spread == pytest.approx(28.92)
        assert projections["w2"].model_spread == pytest.approx(-24.52)
        assert projections["w1"].model_total == pytest.approx(53.0)
        assert projections["w2"].model_total == pytest.approx(50.0 - 0.35 * 4.52)

        results = run_backtest(
            store,
            BacktestConfig(season=2024, now="2025-01-15T00:00:00Z"),
            ModelConfig(spread_odds=100, total_odds=100),
        )
        bets = results.bets
        assert results.total_bets == 6
        assert (results.wins, results.losses, results.pushes) == (6, 0, 0)
        assert results.hit_rate == pytest.approx(1.0)
        assert results.skipped["below_threshold"] == 2
        assert sorted(bets[bets["market_type"] == "spread"]["side"]) == ["away", "away", "home", "home"]
        totals = bets[bets["market_type"] == "total"]
        assert totals["game_id"].tolist() == ["w1", "w3"]
        assert totals["side"].tolist() == ["over", "over"]
        assert totals["tier"].tolist() == ["B", "B"]
