"""
CFB table schemas: single source of truth for required columns.

Every CSV the store reads or writes is checked here first, so a renamed
column fails at the boundary instead of surfacing as a silent DataGap
deep inside the rating or grading math.

Usage:
    from cfb_output_schemas import validate_output, OUTPUT_FILE_SCHEMAS

    validate_output(df, "team_season_ratings", strict=True)
"""

import logging
from typing import Dict, List

import pandas as pd

log = logging.getLogger(__name__)

OUTPUT_FILE_SCHEMAS: Dict[str, List[str]] = {
    "team_season_stats": [
        "team_id", "season",
    ],
    "team_season_ratings": [
        "team_id", "season", "model_version",
        "offense_rating", "defense_rating", "talent_component",
        "power_rating", "confidence", "data_source",
    ],
    "games": [
        "game_id", "season", "week",
        "home_team_id", "away_team_id",
        "neutral_site", "status",
    ],
    "market_lines": [
        "game_id", "line_type", "line_value", "timestamp",
    ],
    "projections": [
        "game_id", "model_version", "created_at", "model_spread",
    ],
    "bets": [
        "bet_id", "game_id", "season", "week",
        "market_type", "side", "model_price", "stake",
        "result", "pnl", "clv",
    ],
    "backtest_bets": [
        "game_id", "season", "week", "market_type", "side",
        "model_price", "close_price", "edge", "tier",
        "stake", "result", "pnl", "clv", "bankroll_after",
    ],
    "calibration_sample": [
        "game_id", "season", "rating_diff", "market_spread",
    ],
}


def validate_output(
    df: pd.DataFrame,
    schema_name: str,
    *,
    strict: bool = False,
) -> List[str]:
    """Validate a DataFrame against a named schema.

    Parameters
    ----------
    df : pd.DataFrame
        The DataFrame to validate.
    schema_name : str
        Key into ``OUTPUT_FILE_SCHEMAS``.
    strict : bool
        If *True*, raise ``ValueError`` on any missing columns.
        If *False* (default), log a warning and return the missing columns.

    Returns
    -------
    list[str]
        Sorted list of missing required columns (empty if all present).

    Raises
    ------
    KeyError
        If *schema_name* is not defined in ``OUTPUT_FILE_SCHEMAS``.
    ValueError
        If *strict* is True and required columns are missing.
    """
    required = OUTPUT_FILE_SCHEMAS.get(schema_name)
    if required is None:
        raise KeyError(f"Unknown output schema: {schema_name!r}")

    missing = sorted(set(required) - set(df.columns))

    if missing:
        msg = f"Output '{schema_name}' missing required columns: {missing}"
        if strict:
            raise ValueError(msg)
        log.warning(msg)

    return missing


REPORT_COLUMNS = [
    "output", "rows", "required_cols", "present_cols",
    "missing_cols", "missing_list", "null_pct",
]


def _null_pct(df: pd.DataFrame, present: List[str]) -> float:
    if len(df) == 0:
        return 0.0
    if not present:
        return 100.0
    return round(float(df[present].isna().to_numpy().mean()) * 100, 2)


def completeness_report(tables: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Per-table row count, schema coverage and null share of required columns.

    Tables without a schema are left out.
    """
    rows = []
    for name, df in tables.items():
        required = OUTPUT_FILE_SCHEMAS.get(name)
        if required is None:
            continue
        present = [c for c in required if c in df.columns]
        missing = [c for c in required if c not in df.columns]
        rows.append([
            name, len(df), len(required), len(present),
            len(missing), ", ".join(missing), _null_pct(df, present),
        ])
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)
