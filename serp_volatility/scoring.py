#!/usr/bin/env python3
"""Composite volatility scorer, regime labels and evidence maturity.

The volatility score (0-100) is a weighted blend of four normalized signals
computed over a sequence of consecutive deltas:

    rank_shift_score   mean absolute rank movement, capped at 20 positions
    max_shift_score    largest single movement, capped at 50 positions
    ai_churn_score     share of pairs where the AI answer panel flipped
    feature_vol_score  mean SERP feature changes per pair, capped at 5

Weights and caps live in data/knowledge/volatility_config.yaml. Every input
only ever pushes the score up, and the score is rounded to 2 decimals before
anything compares or returns it, so regime boundaries (20.00, 50.00, 75.00)
are exact.

The same function scores 1 delta or 1,000; spike detection calls it on a
single pair rather than keeping a second formula.

Usage (import):
    from serp_volatility.scoring import compute_volatility, classify_regime
    profile = compute_volatility(observations)
    regime = classify_regime(profile["volatility_score"])
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from serp_volatility.delta import consecutive_deltas
from serp_volatility.models import Delta, Observation


# ---------------------------------------------------------------------------
# Regime and maturity thresholds
# Upper bounds are inclusive: 20.00 is calm, 20.01 is shifting.
# ---------------------------------------------------------------------------

REGIME_BOUNDS = [
    (20.0, "calm"),
    (50.0, "shifting"),
    (75.0, "unstable"),
]
REGIME_ABOVE_ALL = "chaotic"
REGIMES = ("calm", "shifting", "unstable", "chaotic")

# Sample-size thresholds for how much evidence backs a score.
MATURITY_DEVELOPING_MIN = 5
MATURITY_STABLE_MIN = 20
MATURITY_RANK = {"preliminary": 0, "developing": 1, "stable": 2}

CONFIG_PATH = Path(__file__).resolve().parent.parent / "data" / "knowledge" / "volatility_config.yaml"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@lru_cache(maxsize=None)
def load_score_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load composite score weights and caps from the YAML config.

    Cached per path: the config is a constant of the formula, and scoring runs
    once per pair during spike detection.
    """
    import yaml

    config_path = Path(path) if path else CONFIG_PATH
    with open(config_path, "r") as f:
        config = yaml.safe_load(f)

    score = config["composite_score"]
    weights = score["weights"]
    total = sum(weights.values())
    if abs(total - 1.0) > 1e-9:
        raise ValueError(f"composite_score weights must sum to 1.0, got {total}")
    return score


def round_half_up(value: float, decimals: int) -> float:
    """Round half away from zero via Decimal, independent of float repr quirks."""
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _normalize(value: float, cap: float) -> float:
    """Clamp value to [0, cap] and return it as a 0-1 ratio."""
    if cap <= 0:
        return 0.0
    return min(max(value, 0.0), cap) / cap


def _zero_profile() -> Dict[str, Any]:
    return {
        "sample_size": 0,
        "average_rank_shift": 0,
        "max_rank_shift": 0,
        "feature_volatility": 0,
        "ai_overview_churn": 0,
        "volatility_score": 0,
        "rank_volatility_component": 0,
        "ai_overview_component": 0,
        "feature_volatility_component": 0,
        "parse_warning_count": 0,
    }


# ---------------------------------------------------------------------------
# Core scoring
# ---------------------------------------------------------------------------

def profile_from_deltas(deltas: Sequence[Delta]) -> Dict[str, Any]:
    """Reduce a delta sequence into a Volatility Profile.

    Returns:
        {"sample_size", "average_rank_shift", "max_rank_shift",
         "feature_volatility", "ai_overview_churn", "volatility_score",
         "rank_volatility_component", "ai_overview_component",
         "feature_volatility_component", "parse_warning_count"}
        All zeros when there are no deltas.
    """
    sample_size = len(deltas)
    if sample_size == 0:
        return _zero_profile()

    config = load_score_config()
    weights = config["weights"]
    caps = config["caps"]
    score_decimals = config["score_decimals"]

    average_rank_shift = round_half_up(
        sum(d.average_shift for d in deltas) / sample_size,
        config["average_shift_decimals"],
    )
    max_rank_shift = max(d.max_shift for d in deltas)
    feature_volatility = sum(d.feature_churn for d in deltas)
    ai_overview_churn = sum(1 for d in deltas if d.ai_flipped)

    rank_score = _normalize(average_rank_shift, caps["rank_shift"])
    max_score = _normalize(max_rank_shift, caps["max_shift"])
    ai_score = ai_overview_churn / sample_size
    feature_score = _normalize(feature_volatility / sample_size, caps["feature_churn"])

    rank_part = weights["rank_shift"] * rank_score + weights["max_shift"] * max_score
    ai_part = weights["ai_churn"] * ai_score
    feature_part = weights["feature_churn"] * feature_score

    return {
        "sample_size": sample_size,
        "average_rank_shift": average_rank_shift,
        "max_rank_shift": max_rank_shift,
        "feature_volatility": feature_volatility,
        "ai_overview_churn": ai_overview_churn,
        "volatility_score": round_half_up((rank_part + ai_part + feature_part) * 100, score_decimals),
        "rank_volatility_component": round_half_up(rank_part * 100, score_decimals),
        "ai_overview_component": round_half_up(ai_part * 100, score_decimals),
        "feature_volatility_component": round_half_up(feature_part * 100, score_decimals),
        "parse_warning_count": sum(1 for d in deltas if d.parse_warning),
    }


def compute_volatility(observations: Sequence[Observation]) -> Dict[str, Any]:
    """Score an observation list that is already window-filtered and ordered.

    Input MUST be in ledger order (captured_at ASC, id ASC). Fewer than two
    observations yields sample_size=0 and an all-zero profile.
    """
    return profile_from_deltas(consecutive_deltas(observations))


def pair_scores(observations: Sequence[Observation]) -> List[Dict[str, Any]]:
    """Profile of every consecutive pair, each scored as a one-pair window."""
    return [
        compute_volatility([observations[i], observations[i + 1]])
        for i in range(len(observations) - 1)
    ]


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------

def classify_regime(score: float) -> str:
    """calm / shifting / unstable / chaotic, inclusive upper bounds."""
    rounded = round_half_up(score, 2)
    for upper, label in REGIME_BOUNDS:
        if rounded <= upper:
            return label
    return REGIME_ABOVE_ALL


def classify_maturity(sample_size: int) -> str:
    """How much evidence backs a score: preliminary / developing / stable."""
    if sample_size < MATURITY_DEVELOPING_MIN:
        return "preliminary"
    if sample_size < MATURITY_STABLE_MIN:
        return "developing"
    return "stable"
