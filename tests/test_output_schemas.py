import sys
from pathlib import Path

import pandas as pd
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from cfb_output_schemas import (
    OUTPUT_FILE_SCHEMAS,
    completeness_report,
    validate_output,
)


# ── validate_output ──────────────────────────────────────────────────────────

def test_validate_output_passes_when_all_columns_present():
    cols = OUTPUT_FILE_SCHEMAS["games"]
    df = pd.DataFrame([{c: "x" for c in cols}])
    missing = validate_output(df, "games")
    assert missing == []


def test_validate_output_returns_missing_columns():
    df = pd.DataFrame([{"game_id": "1"}])
    missing = validate_output(df, "games")
    assert "home_team_id" in missing
    assert "away_team_id" in missing


def test_validate_output_strict_raises_on_missing():
    df = pd.DataFrame([{"game_id": "1"}])
    with pytest.raises(ValueError, match="missing required columns"):
        validate_output(df, "games", strict=True)


def test_validate_output_strict_passes_when_complete():
    cols = OUTPUT_FILE_SCHEMAS["team_season_ratings"]
    df = pd.DataFrame([{c: 1 for c in cols}])
    assert validate_output(df, "team_season_ratings", strict=True) == []


def test_validate_output_unknown_schema_raises_key_error():
    with pytest.raises(KeyError, match="Unknown output schema"):
        validate_output(pd.DataFrame(), "not_a_table")


def test_validate_output_extra_columns_are_ignored():
    cols = OUTPUT_FILE_SCHEMAS["market_lines"] + ["book", "side", "source"]
    df = pd.DataFrame([{c: "x" for c in cols}])
    assert validate_output(df, "market_lines") == []


# ── completeness_report ──────────────────────────────────────────────────────

def test_completeness_report_counts_rows_and_missing():
    cols = OUTPUT_FILE_SCHEMAS["bets"]
    full = pd.DataFrame([{c: 1 for c in cols}, {c: 2 for c in cols}])
    partial = pd.DataFrame([{"game_id": "1", "season": 2024}])
    report = completeness_report({"bets": full, "games": partial})

    bets_row = report[report["output"] == "bets"].iloc[0]
    assert bets_row["rows"] == 2
    assert bets_row["missing_cols"] == 0
    assert bets_row["null_pct"] == 0.0

    games_row = report[report["output"] == "games"].iloc[0]
    assert games_row["missing_cols"] == len(OUTPUT_FILE_SCHEMAS["games"]) - 2
    assert "week" in games_row["missing_list"]


def test_completeness_report_null_pct_for_empty_and_null_tables():
    cols = OUTPUT_FILE_SCHEMAS["projections"]
    empty = pd.DataFrame(columns=cols)
    nulls = pd.DataFrame([{c: None for c in cols}])
    report = completeness_report({"projections": empty, "market_lines": pd.DataFrame([{"x": 1}])})
    assert report.set_index("output").loc["projections", "null_pct"] == 0.0
    assert report.set_index("output").loc["market_lines", "null_pct"] == 100.0

    report = completeness_report({"projections": nulls})
    assert report.iloc[0]["null_pct"] == 100.0


def test_completeness_report_skips_unknown_tables():
    report = completeness_report({"something_else": pd.DataFrame([{"a": 1}])})
    assert report.empty
