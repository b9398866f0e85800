"""
CFB model configuration shared across cfb_* modules.

Every tunable number lives on ModelConfig. Defaults below are the values the
model currently ships with; a JSON overlay (data/model_config.json, or the
path in $CFB_MODEL_CONFIG) replaces any subset of them.
"""

import json
import os
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, Optional

from cfb_errors import ConfigError

DATA_DIR = Path("data")
MODEL_CONFIG_PATH = Path(os.getenv("CFB_MODEL_CONFIG", str(DATA_DIR / "model_config.json")))

DEFAULT_MODEL_VERSION = "v1"

# ── Home field ────────────────────────────────────────────────────────────────
BASE_HFA = 2.0
HFA_CLIP_MIN = 0.5
HFA_CLIP_MAX = 3.5
# Prior strength in "games": a team needs SHRINKAGE_K home games before its
# own residual gets half the weight. 8 ≈ one and a half seasons of home games.
HFA_SHRINKAGE_K = 8.0
REGULAR_SEASON_MAX_WEEK = 14

# ── Ratings ───────────────────────────────────────────────────────────────────
CALIBRATION_FACTOR = 6.5
BASELINE_RATING = 0.0

DEFAULT_OFFENSE_WEIGHTS = {
    "ypp_off":      0.30,
    "pass_ypa_off": 0.20,
    "rush_ypc_off": 0.15,
    "success_off":  0.20,
    "epa_off":      0.15,
}

DEFAULT_DEFENSE_WEIGHTS = {
    "ypp_def":      0.20,
    "pass_ypa_def": 0.20,
    "rush_ypc_def": 0.15,
    "success_def":  0.25,
    "epa_def":      0.20,
}

DATA_SOURCE_QUALITY = {
    "game":     1.0,
    "season":   0.9,
    "baseline": 0.7,
}

# ── Edges / betting ───────────────────────────────────────────────────────────
DEFAULT_TIER_THRESHOLDS = {"A": 4.0, "B": 3.0, "C": 2.0}
STANDARD_JUICE = -110
VIG_BREAK_EVEN = 52.38
PUSH_TOLERANCE = 0.5
SPREAD_SIGMA = 14.0   # CFB final-margin distribution width around the spread

MIN_CALIBRATION_GAMES = 30


@dataclass
class ModelConfig:
    """
    Full configuration surface of the model.

    Rating scale:
      calibration_factor maps the blended z-score sum onto points. It is
      re-derived from cfb_calibration whenever the metric weights change.

    Talent:
      talent_component = talent_weight * talent_z * decay, where
      decay = max(talent_decay_floor, 1 - games_played / talent_decay_games).
    """

    # ─── Rating engine ───
    offense_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_OFFENSE_WEIGHTS))
    defense_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_DEFENSE_WEIGHTS))
    talent_weight: float = 0.25
    talent_decay_games: float = 12.0
    talent_decay_floor: float = 0.2
    calibration_factor: float = CALIBRATION_FACTOR
    baseline_rating: float = BASELINE_RATING
    min_games_for_full_confidence: int = 5
    data_source_quality: Dict[str, float] = field(default_factory=lambda: dict(DATA_SOURCE_QUALITY))

    # ─── Home field ───
    base_hfa: float = BASE_HFA
    hfa_clip_min: float = HFA_CLIP_MIN
    hfa_clip_max: float = HFA_CLIP_MAX
    hfa_shrinkage_k: float = HFA_SHRINKAGE_K
    regular_season_max_week: int = REGULAR_SEASON_MAX_WEEK

    # ─── Projection ───
    spread_sigma: float = SPREAD_SIGMA
    totals_beta: float = 0.35
    totals_max_overlay: float = 3.0
    sign_check_tolerance: float = 10.0

    # ─── Edges ───
    tier_thresholds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TIER_THRESHOLDS))

    # ─── Grading / sizing ───
    push_tolerance: float = PUSH_TOLERANCE
    spread_odds: float = STANDARD_JUICE
    total_odds: float = STANDARD_JUICE
    kelly_fraction: float = 0.25
    max_bet_fraction: float = 0.05
    flat_bet_fraction: float = 0.05
    reference_line_magnitude: float = 10.0

    # ─── Calibration fitter ───
    min_calibration_games: int = MIN_CALIBRATION_GAMES

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.hfa_clip_min > self.hfa_clip_max:
            raise ConfigError(
                f"hfa_clip_min ({self.hfa_clip_min}) exceeds hfa_clip_max ({self.hfa_clip_max})"
            )
        if not self.hfa_clip_min <= self.base_hfa <= self.hfa_clip_max:
            raise ConfigError(
                f"base_hfa {self.base_hfa} outside clip range "
                f"[{self.hfa_clip_min}, {self.hfa_clip_max}]"
            )
        if self.hfa_shrinkage_k < 0:
            raise ConfigError("hfa_shrinkage_k must be non-negative")
        if self.talent_decay_games <= 0:
            raise ConfigError("talent_decay_games must be positive")
        if self.push_tolerance < 0:
            raise ConfigError("push_tolerance must be non-negative")
        for name in ("kelly_fraction", "max_bet_fraction", "flat_bet_fraction"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")
        if self.reference_line_magnitude <= 0:
            raise ConfigError("reference_line_magnitude must be positive")
        if -100 < self.spread_odds < 100 or -100 < self.total_odds < 100:
            raise ConfigError("American odds must be <= -100 or >= +100")
        if not self.tier_thresholds:
            raise ConfigError("tier_thresholds must not be empty")

    @property
    def tracked_metrics(self) -> Dict[str, float]:
        return {**self.offense_weights, **self.defense_weights}

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict) -> "ModelConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            raise ConfigError(f"Unknown model config keys: {sorted(unknown)}")
        return cls(**payload)


def load_model_config(path: Optional[Path] = None) -> ModelConfig:
    """
    Build a ModelConfig from defaults plus the JSON overlay at `path`.

    Weight dicts are merged key-by-key so an overlay can retune one metric
    without restating the rest. A missing or empty overlay yields defaults.
    """
    path = Path(path) if path is not None else MODEL_CONFIG_PATH
    base = ModelConfig().to_dict()
    if not path.exists() or path.stat().st_size <= 2:
        return ModelConfig.from_dict(base)

    try:
        payload = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read model config {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Model config {path} must be a JSON object")

    for key, value in payload.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            base[key].update(value)
        else:
            base[key] = value
    return ModelConfig.from_dict(base)


def save_model_config(config: ModelConfig, path: Optional[Path] = None) -> Path:
    path = Path(path) if path is not None else MODEL_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    return path
