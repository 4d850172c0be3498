#!/usr/bin/env python3
"""Tenant-level decision derivations built on the composite scorer.

Where diagnostics.py explains one tracked query, this module ranks and
aggregates across a tenant so an operator knows where to look first:

1. project_risk_index: mean score, top 3 queries, concentration
2. competitive_pressure: URLs holding top-3 slots across many queries
3. volatility_momentum: is one query heating up or cooling down
4. volatility_summary: bucket counts across every tracked query
5. volatility_alerts: paginated list of queries above a threshold

Tenant-wide functions take `entries`: a list of (TrackedQuery, observations)
tuples where each observation list is already window-filtered and in ledger
order. Loading and scoping is the service layer's job.

Usage (import):
    from serp_volatility.decisions import project_risk_index
    risk = project_risk_index([(tracked_query, observations), ...])
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from serp_volatility.extraction import extract_organic_results, top_ranked_urls
from serp_volatility.models import Observation, TrackedQuery
from serp_volatility.schema import format_timestamp
from serp_volatility.scoring import (
    MATURITY_RANK,
    classify_maturity,
    classify_regime,
    compute_volatility,
    round_half_up,
)

Entry = Tuple[TrackedQuery, Sequence[Observation]]


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

# Project risk
RISK_TOP_QUERIES = 3

# Competitive pressure: a "top slot" is one of the best 3 non-null ranks.
TOP_SLOT_COUNT = 3

# Momentum windows, in days. Current = (now - 30d, now],
# prior = (now - 60d, now - 30d].
MOMENTUM_WINDOW_DAYS = 30

# Summary buckets. Scores below LOW_THRESHOLD count as stable, which covers
# both "never moved" and "not enough captures yet".
HIGH_THRESHOLD = 60
MEDIUM_THRESHOLD = 30
LOW_THRESHOLD = 1

# Alert cursor: score formatted to 5 decimals, zero-padded to 9 chars.
CURSOR_SCORE_WIDTH = 9


# ---------------------------------------------------------------------------
# Project risk index
# ---------------------------------------------------------------------------

def project_risk_index(entries: Sequence[Entry]) -> Dict[str, Any]:
    """Aggregate per-query scores into a tenant risk picture.

    Only active tracked queries participate. Queries with zero deltas carry
    no evidence and are left out of the mean, the top list and both sums of
    the concentration ratio.

    Returns:
        {"keyword_count", "active_keyword_count", "scored_keyword_count",
         "mean_score", "top_queries": [...], "concentration_ratio"}
        mean_score is None when no query has a delta. concentration_ratio is
        None when the sum of all scores is 0: zero over zero carries no
        concentration signal.
    """
    active = [(tq, obs) for tq, obs in entries if tq.is_active]

    scored = []
    for tq, observations in active:
        profile = compute_volatility(observations)
        if profile["sample_size"] < 1:
            continue
        scored.append((tq, profile))

    scored.sort(key=lambda s: (-s[1]["volatility_score"], s[0].query, s[0].id))

    total = sum(p["volatility_score"] for _, p in scored)
    top = scored[:RISK_TOP_QUERIES]
    top_total = sum(p["volatility_score"] for _, p in top)

    return {
        "keyword_count": len(entries),
        "active_keyword_count": len(active),
        "scored_keyword_count": len(scored),
        "mean_score": round_half_up(total / len(scored), 2) if scored else None,
        "top_queries": [
            {
                "tracked_query_id": tq.id,
                "query": tq.query,
                "locale": tq.locale,
                "device": tq.device,
                "volatility_score": p["volatility_score"],
                "volatility_regime": classify_regime(p["volatility_score"]),
                "sample_size": p["sample_size"],
            }
            for tq, p in top
        ],
        "concentration_ratio": round_half_up(top_total / total, 4) if total > 0 else None,
    }


# ---------------------------------------------------------------------------
# Competitive pressure
# ---------------------------------------------------------------------------

def competitive_pressure(entries: Sequence[Entry], limit: Optional[int] = None) -> Dict[str, Any]:
    """Find URLs that occupy top slots across many tracked queries.

    The caller MUST bound the observations by time window: cost grows with
    queries x captures x results.

    Returns:
        {"keyword_count", "observation_count", "url_count",
         "urls": [{"url", "queries_impacted", "top3_appearances",
                   "average_top3_shift"}, ...]}
        Sorted queries_impacted DESC, top3_appearances DESC, url ASC.
    """
    stats: Dict[str, Dict[str, Any]] = {}
    observation_count = 0

    def entry_for(url: str) -> Dict[str, Any]:
        entry = stats.get(url)
        if entry is None:
            entry = {"queries": set(), "appearances": 0, "shift_total": 0, "shift_pairs": 0}
            stats[url] = entry
        return entry

    for tq, observations in entries:
        observation_count += len(observations)
        top_slots = [
            top_ranked_urls(extract_organic_results(o.raw_payload)["results"], TOP_SLOT_COUNT)
            for o in observations
        ]

        for slots in top_slots:
            for url in slots:
                entry = entry_for(url)
                entry["queries"].add(tq.id)
                entry["appearances"] += 1

        for before, after in zip(top_slots, top_slots[1:]):
            for url in before.keys() & after.keys():
                entry = stats[url]
                entry["shift_total"] += abs(before[url] - after[url])
                entry["shift_pairs"] += 1

    urls = [
        {
            "url": url,
            "queries_impacted": len(entry["queries"]),
            "top3_appearances": entry["appearances"],
            "average_top3_shift": (
                round_half_up(entry["shift_total"] / entry["shift_pairs"], 2)
                if entry["shift_pairs"] else 0
            ),
        }
        for url, entry in stats.items()
    ]
    urls.sort(key=lambda u: (-u["queries_impacted"], -u["top3_appearances"], u["url"]))

    return {
        "keyword_count": len(entries),
        "observation_count": observation_count,
        "url_count": len(urls),
        "urls": urls if limit is None else urls[:limit],
    }


# ---------------------------------------------------------------------------
# Momentum
# ---------------------------------------------------------------------------

def momentum_windows(now: datetime, window_days: int = MOMENTUM_WINDOW_DAYS) -> Dict[str, datetime]:
    """Boundaries of the two adjacent windows, all derived from one `now`."""
    current_start = now - timedelta(days=window_days)
    return {
        "prior_start": current_start - timedelta(days=window_days),
        "current_start": current_start,
        "now": now,
    }


def classify_direction(momentum_delta: Optional[float]) -> Optional[str]:
    if momentum_delta is None:
        return None
    if momentum_delta > 0:
        return "accelerating"
    if momentum_delta < 0:
        return "decelerating"
    return "stable"


def volatility_momentum(
    observations: Sequence[Observation],
    now: datetime,
    window_days: int = MOMENTUM_WINDOW_DAYS,
) -> Dict[str, Any]:
    """Compare the current window's score against the window before it.

    Windows are half-open on the left: an observation captured exactly at
    now - 30d belongs to the prior window. Observations after `now` are in
    neither.

    Returns:
        {"window_days", "current": {...}, "prior": {...}, "momentum_delta",
         "direction"}
        momentum_delta and direction are None when either window has zero
        samples.
    """
    bounds = momentum_windows(now, window_days)
    current = [o for o in observations if bounds["current_start"] < o.captured_at <= now]
    prior = [
        o for o in observations
        if bounds["prior_start"] < o.captured_at <= bounds["current_start"]
    ]

    current_profile = compute_volatility(current)
    prior_profile = compute_volatility(prior)

    momentum_delta = None
    if current_profile["sample_size"] > 0 and prior_profile["sample_size"] > 0:
        momentum_delta = round_half_up(
            current_profile["volatility_score"] - prior_profile["volatility_score"], 2
        )

    def window_view(profile: Dict[str, Any], start: datetime, end: datetime, count: int) -> Dict[str, Any]:
        return {
            "start": format_timestamp(start),
            "end": format_timestamp(end),
            "observation_count": count,
            "sample_size": profile["sample_size"],
            "volatility_score": profile["volatility_score"],
        }

    return {
        "window_days": window_days,
        "current": window_view(current_profile, bounds["current_start"], now, len(current)),
        "prior": window_view(prior_profile, bounds["prior_start"], bounds["current_start"], len(prior)),
        "momentum_delta": momentum_delta,
        "direction": classify_direction(momentum_delta),
    }


# ---------------------------------------------------------------------------
# Tenant summary
# ---------------------------------------------------------------------------

def bucket_for(score: float) -> str:
    if score >= HIGH_THRESHOLD:
        return "high"
    if score >= MEDIUM_THRESHOLD:
        return "medium"
    if score >= LOW_THRESHOLD:
        return "low"
    return "stable"


def volatility_summary(entries: Sequence[Entry]) -> Dict[str, Any]:
    """Bucket every tracked query by score.

    The four bucket counts always add up to keyword_count. average_volatility
    is taken over ALL queries, zero scores included, so dormant keywords pull
    the average down instead of being hidden.
    """
    counts = {"high": 0, "medium": 0, "low": 0, "stable": 0}
    active_count = 0
    max_score = 0
    score_sum = 0

    for _, observations in entries:
        profile = compute_volatility(observations)
        score = profile["volatility_score"]
        if profile["sample_size"] >= 1:
            active_count += 1
        score_sum += score
        max_score = max(max_score, score)
        counts[bucket_for(score)] += 1

    keyword_count = len(entries)
    return {
        "keyword_count": keyword_count,
        "active_keyword_count": active_count,
        "average_volatility": round_half_up(score_sum / keyword_count, 2) if keyword_count else 0,
        "max_volatility": max_score,
        "high_volatility_count": counts["high"],
        "medium_volatility_count": counts["medium"],
        "low_volatility_count": counts["low"],
        "stable_count": counts["stable"],
    }


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

def encode_alert_cursor(score: float, query: str, tracked_query_id: str) -> str:
    """Opaque base64url cursor for the position after one alert item."""
    padded = f"{score:.5f}".rjust(CURSOR_SCORE_WIDTH, "0")
    raw = f"{padded}:{query}:{tracked_query_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_alert_cursor(cursor: str) -> Optional[Dict[str, Any]]:
    """Decode a cursor, or None when it is malformed.

    The score is everything before the first colon and the id everything
    after the last one. Ids never contain a colon, so query text does not
    need escaping.
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None

    score_text, sep, rest = raw.partition(":")
    query, sep_id, tq_id = rest.rpartition(":")
    if not sep or not sep_id or not tq_id:
        return None
    try:
        score = float(score_text)
    except ValueError:
        return None
    return {"score": score, "query": query, "id": tq_id}


def _after_cursor(item: Dict[str, Any], pos: Dict[str, Any]) -> bool:
    score = item["volatility_score"]
    if score != pos["score"]:
        return score < pos["score"]
    if item["query"] != pos["query"]:
        return item["query"] > pos["query"]
    return item["tracked_query_id"] > pos["id"]


def volatility_alerts(
    entries: Sequence[Entry],
    alert_threshold: float = 60,
    min_maturity: str = "developing",
    limit: int = 20,
    cursor: Optional[str] = None,
) -> Dict[str, Any]:
    """Queries whose score meets the threshold, most urgent first.

    A query needs at least one delta and at least `min_maturity` evidence to
    alert. Sorted volatility_score DESC, query ASC, tracked_query_id ASC. A
    malformed cursor is ignored and the page starts from the top.

    Returns:
        {"items": [...], "next_cursor": str | None, "total_matching": int}
    """
    min_rank = MATURITY_RANK[min_maturity]
    items = []

    for tq, observations in entries:
        profile = compute_volatility(observations)
        if profile["sample_size"] < 1:
            continue
        maturity = classify_maturity(profile["sample_size"])
        if MATURITY_RANK[maturity] < min_rank:
            continue
        if profile["volatility_score"] < alert_threshold:
            continue
        items.append({
            "tracked_query_id": tq.id,
            "query": tq.query,
            "locale": tq.locale,
            "device": tq.device,
            "volatility_score": profile["volatility_score"],
            "rank_volatility_component": profile["rank_volatility_component"],
            "ai_overview_component": profile["ai_overview_component"],
            "feature_volatility_component": profile["feature_volatility_component"],
            "maturity": maturity,
            "volatility_regime": classify_regime(profile["volatility_score"]),
            "sample_size": profile["sample_size"],
            "alert_threshold": alert_threshold,
            "exceeds_threshold": True,
        })

    items.sort(key=lambda i: (-i["volatility_score"], i["query"], i["tracked_query_id"]))

    start = 0
    position = decode_alert_cursor(cursor) if cursor else None
    if position is not None:
        start = next(
            (idx for idx, item in enumerate(items) if _after_cursor(item, position)),
            len(items),
        )

    page = items[start:start + limit]
    next_cursor = None
    if start + limit < len(items):
        last = page[-1]
        next_cursor = encode_alert_cursor(
            last["volatility_score"], last["query"], last["tracked_query_id"]
        )

    return {"items": page, "next_cursor": next_cursor, "total_matching": len(items)}
