#!/usr/bin/env python3
"""Diagnostic derivations over one tracked query's delta sequence.

Four read-only views that explain WHERE a volatility score comes from:

1. url_attribution: which URLs contribute the rank movement
2. volatility_spikes: which consecutive pairs were the most volatile
3. feature_transitions: how the SERP feature set moves between captures
4. ai_stability: flip/streak model of the AI answer panel

Each function takes observations already in ledger order (captured_at ASC,
id ASC) and returns a JSON-serializable dict. None of them re-extracts
payloads on its own: ranks and features come from the delta engine, which
reads through serp_volatility.extraction.

Usage (import):
    from serp_volatility.diagnostics import url_attribution
    result = url_attribution(observations, top_n=20)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from serp_volatility.delta import consecutive_deltas
from serp_volatility.extraction import TRANSITION_SEPARATOR
from serp_volatility.models import Observation
from serp_volatility.schema import format_timestamp
from serp_volatility.scoring import compute_volatility, round_half_up


# ---------------------------------------------------------------------------
# URL contribution attribution
# ---------------------------------------------------------------------------

def url_attribution(
    observations: Sequence[Observation],
    top_n: Optional[int] = None,
) -> Dict[str, Any]:
    """Aggregate per-URL rank movement across all consecutive pairs.

    appearances counts every pair where the URL is ranked on at least one
    side, so entries and exits count. total_abs_shift only accumulates from
    pairs where the URL is ranked on both sides.

    Args:
        observations: Ordered observations for one tracked query.
        top_n: Keep only the first top_n URLs after sorting. None keeps all.

    Returns:
        {"sample_size": int, "url_count": int, "urls": [
            {"url", "appearances", "total_abs_shift", "average_shift",
             "first_seen", "last_seen"}, ...]}
        Sorted total_abs_shift DESC, url ASC.
    """
    deltas = consecutive_deltas(observations)
    stats: Dict[str, Dict[str, Any]] = {}

    for delta in deltas:
        for url, (rank_from, rank_to) in delta.url_ranks.items():
            seen_at = []
            if rank_from is not None:
                seen_at.append(delta.from_captured_at)
            if rank_to is not None:
                seen_at.append(delta.to_captured_at)

            entry = stats.get(url)
            if entry is None:
                entry = {
                    "appearances": 0,
                    "total_abs_shift": 0,
                    "pairs_both_present": 0,
                    "first_seen": min(seen_at),
                    "last_seen": max(seen_at),
                }
                stats[url] = entry

            entry["appearances"] += 1
            entry["first_seen"] = min(entry["first_seen"], *seen_at)
            entry["last_seen"] = max(entry["last_seen"], *seen_at)

            if delta.present_on_both(url):
                entry["total_abs_shift"] += delta.rank_shifts[url]
                entry["pairs_both_present"] += 1

    urls = []
    for url, entry in stats.items():
        pairs = entry["pairs_both_present"]
        urls.append({
            "url": url,
            "appearances": entry["appearances"],
            "total_abs_shift": round_half_up(entry["total_abs_shift"], 2),
            "average_shift": round_half_up(entry["total_abs_shift"] / pairs, 2) if pairs else 0,
            "first_seen": format_timestamp(entry["first_seen"]),
            "last_seen": format_timestamp(entry["last_seen"]),
        })

    # url is unique per result set, so this sort is total
    urls.sort(key=lambda u: (-u["total_abs_shift"], u["url"]))

    return {
        "sample_size": len(deltas),
        "url_count": len(urls),
        "urls": urls if top_n is None else urls[:top_n],
    }


# ---------------------------------------------------------------------------
# Spike detection
# ---------------------------------------------------------------------------

def volatility_spikes(
    observations: Sequence[Observation],
    top_n: int = 3,
) -> Dict[str, Any]:
    """Rank consecutive pairs by their own single-pair volatility score.

    The pair score is compute_volatility([A, B]) exactly: the same formula,
    weights and rounding as the whole-window score.

    Returns:
        {"sample_size": int, "total_pairs": int, "spikes": [...]}
        spikes holds min(top_n, sample_size) entries sorted by
        pair_volatility_score DESC, to_captured_at DESC, to_observation_id DESC.
        It is empty only when there are no pairs.
    """
    candidates = []
    for i in range(len(observations) - 1):
        a, b = observations[i], observations[i + 1]
        profile = compute_volatility([a, b])
        candidates.append({
            "from_observation_id": a.id,
            "to_observation_id": b.id,
            "from_captured_at": a.captured_at,
            "to_captured_at": b.captured_at,
            "pair_volatility_score": profile["volatility_score"],
            "pair_rank_shift": profile["average_rank_shift"],
            "pair_max_shift": profile["max_rank_shift"],
            "pair_feature_change_count": profile["feature_volatility"],
            "ai_flipped": profile["ai_overview_churn"] == 1,
        })

    # Three stable sorts, least significant key first, give the full
    # DESC / DESC / DESC ordering without negating strings or datetimes.
    candidates.sort(key=lambda c: c["to_observation_id"], reverse=True)
    candidates.sort(key=lambda c: c["to_captured_at"], reverse=True)
    candidates.sort(key=lambda c: c["pair_volatility_score"], reverse=True)

    sample_size = len(candidates)
    spikes = []
    for c in candidates[: min(top_n, sample_size)]:
        spike = dict(c)
        spike["from_captured_at"] = format_timestamp(c["from_captured_at"])
        spike["to_captured_at"] = format_timestamp(c["to_captured_at"])
        spikes.append(spike)

    return {
        "sample_size": sample_size,
        "total_pairs": sample_size,
        "spikes": spikes,
    }


# ---------------------------------------------------------------------------
# Feature transition matrix
# ---------------------------------------------------------------------------

def transition_key(from_features: Sequence[str], to_features: Sequence[str]) -> str:
    """"a,b→c" style key. An empty side is the empty string."""
    return ",".join(from_features) + TRANSITION_SEPARATOR + ",".join(to_features)


def feature_transitions(observations: Sequence[Observation]) -> Dict[str, Any]:
    """Count how often each (from feature set -> to feature set) move occurs.

    Every pair lands in exactly one bucket, including the bucket for "no
    features on either side", so sum(count) == sample_size always.

    Returns:
        {"sample_size", "total_transitions", "distinct_transition_count",
         "transitions": [{"from_feature_set", "to_feature_set", "count"}, ...]}
        Sorted count DESC, from key ASC, to key ASC.
    """
    deltas = consecutive_deltas(observations)
    buckets: Dict[str, Dict[str, Any]] = {}

    for delta in deltas:
        key = transition_key(delta.from_features, delta.to_features)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = {
                "from_key": ",".join(delta.from_features),
                "to_key": ",".join(delta.to_features),
                "from_feature_set": list(delta.from_features),
                "to_feature_set": list(delta.to_features),
                "count": 0,
            }
            buckets[key] = bucket
        bucket["count"] += 1

    ordered = sorted(
        buckets.values(),
        key=lambda b: (-b["count"], b["from_key"], b["to_key"]),
    )

    return {
        "sample_size": len(deltas),
        "total_transitions": sum(b["count"] for b in ordered),
        "distinct_transition_count": len(ordered),
        "transitions": [
            {
                "from_feature_set": b["from_feature_set"],
                "to_feature_set": b["to_feature_set"],
                "count": b["count"],
            }
            for b in ordered
        ],
    }


# ---------------------------------------------------------------------------
# AI answer panel stability
# ---------------------------------------------------------------------------

def _longest_run(flags: List[bool], value: bool) -> int:
    longest = current = 0
    for flag in flags:
        current = current + 1 if flag == value else 0
        longest = max(longest, current)
    return longest


def ai_stability(observations: Sequence[Observation]) -> Dict[str, Any]:
    """Streak model over the AI panel flip flags of consecutive pairs.

    All lengths are counted in pairs, never in wall-clock time. The current
    streak is measured backward from the most recent pair.

    Returns:
        {"sample_size", "total_flips", "flip_ratio", "longest_stable_streak",
         "longest_flip_streak", "current_streak_length", "current_streak_type",
         "latest_ai_status"}
        flip_ratio and current_streak_type are None when there are no pairs.
    """
    flags = [d.ai_flipped for d in consecutive_deltas(observations)]
    sample_size = len(flags)
    total_flips = sum(1 for f in flags if f)

    current_length = 0
    current_type = None
    if flags:
        last = flags[-1]
        for flag in reversed(flags):
            if flag != last:
                break
            current_length += 1
        current_type = "flipping" if last else "stable"

    return {
        "sample_size": sample_size,
        "total_flips": total_flips,
        "flip_ratio": round_half_up(total_flips / sample_size, 4) if sample_size else None,
        "longest_stable_streak": _longest_run(flags, False),
        "longest_flip_streak": _longest_run(flags, True),
        "current_streak_length": current_length,
        "current_streak_type": current_type,
        "latest_ai_status": observations[-1].ai_status if observations else None,
    }
