#!/usr/bin/env python3
"""Pairwise delta engine for consecutive SERP observations.

A Delta is the atomic unit every score and diagnostic is built from: for an
ordered pair (A, B) of observations sharing (query, locale, device), it holds
the per-URL rank shifts, the feature sets on both sides, the feature churn
count and whether the AI answer panel flipped.

Also provides compare_results(), the operator-facing moved / entered /
exited view of a single pair.

Usage (import):
    from serp_volatility.delta import consecutive_deltas
    deltas = consecutive_deltas(observations)   # N-1 deltas
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from serp_volatility.extraction import extract_result_set, rank_lookup
from serp_volatility.models import Delta, Observation


def compute_delta(a: Observation, b: Observation) -> Delta:
    """Compute the delta between two observations of the same key.

    Args:
        a: The earlier observation.
        b: The later observation (a.captured_at <= b.captured_at).

    Raises:
        ValueError: if the observations are out of order or belong to
            different (tenant, query, locale, device) keys.
    """
    if a.captured_at > b.captured_at:
        raise ValueError(
            f"Observations out of order: {a.id} captured after {b.id}"
        )
    if a.tenant_id != b.tenant_id or a.key != b.key:
        raise ValueError(
            f"Observations {a.id} and {b.id} do not share a tracked query key"
        )

    extracted_a = extract_result_set(a.raw_payload)
    extracted_b = extract_result_set(b.raw_payload)

    ranks_a = rank_lookup(extracted_a["results"])
    ranks_b = rank_lookup(extracted_b["results"])

    url_ranks = {}
    rank_shifts = {}
    for url in sorted(set(ranks_a) | set(ranks_b)):
        rank_a = ranks_a.get(url)
        rank_b = ranks_b.get(url)
        if rank_a is None and rank_b is None:
            continue
        url_ranks[url] = (rank_a, rank_b)
        if rank_a is not None and rank_b is not None:
            rank_shifts[url] = abs(rank_a - rank_b)

    features_a = tuple(extracted_a["feature_set"])
    features_b = tuple(extracted_b["feature_set"])
    feature_churn = len(set(features_a) ^ set(features_b))

    return Delta(
        from_id=a.id,
        to_id=b.id,
        from_captured_at=a.captured_at,
        to_captured_at=b.captured_at,
        url_ranks=url_ranks,
        rank_shifts=rank_shifts,
        from_features=features_a,
        to_features=features_b,
        feature_churn=feature_churn,
        ai_flipped=a.ai_status != b.ai_status,
        parse_warning=extracted_a["parse_warning"] or extracted_b["parse_warning"],
    )


def consecutive_deltas(observations: Sequence[Observation]) -> List[Delta]:
    """Return the N-1 deltas of an observation list already in ledger order."""
    return [
        compute_delta(observations[i], observations[i + 1])
        for i in range(len(observations) - 1)
    ]


def sort_observations(observations: Sequence[Observation]) -> List[Observation]:
    """Ledger order: captured_at ASC, id ASC."""
    return sorted(observations, key=lambda o: o.sort_key())


# ---------------------------------------------------------------------------
# Moved / entered / exited view
# ---------------------------------------------------------------------------

def _entry_sort_key(entry: Dict[str, Any]):
    rank = entry["rank"]
    return (1, 0, entry["url"]) if rank is None else (0, rank, entry["url"])


def _moved_sort_key(entry: Dict[str, Any]):
    # rank_delta DESC (biggest improvement first), nulls last, then url ASC
    delta = entry["rank_delta"]
    return (1, 0, entry["url"]) if delta is None else (0, -delta, entry["url"])


def compare_results(a: Observation, b: Observation) -> Dict[str, Any]:
    """Operator view of one pair: which URLs moved, entered or exited.

    rank_delta is rank_from - rank_to, so a positive value means the URL
    moved up the page. Unlike Delta, a URL with a null rank still appears
    here: an unranked listing is still a listing.
    """
    extracted_a = extract_result_set(a.raw_payload)
    extracted_b = extract_result_set(b.raw_payload)
    ranks_a = rank_lookup(extracted_a["results"])
    ranks_b = rank_lookup(extracted_b["results"])

    entered = sorted(
        ({"url": url, "rank": rank} for url, rank in ranks_b.items() if url not in ranks_a),
        key=_entry_sort_key,
    )
    exited = sorted(
        ({"url": url, "rank": rank} for url, rank in ranks_a.items() if url not in ranks_b),
        key=_entry_sort_key,
    )

    moved = []
    for url, rank_from in ranks_a.items():
        if url not in ranks_b:
            continue
        rank_to = ranks_b[url]
        rank_delta: Optional[float] = None
        if rank_from is not None and rank_to is not None:
            rank_delta = rank_from - rank_to
        moved.append({
            "url": url,
            "rank_from": rank_from,
            "rank_to": rank_to,
            "rank_delta": rank_delta,
        })
    moved.sort(key=_moved_sort_key)

    return {
        "moved": moved,
        "entered": entered,
        "exited": exited,
        "ai_overview": {
            "changed": a.ai_status != b.ai_status,
            "from": a.ai_status,
            "to": b.ai_status,
        },
        "summary": {
            "moved_count": len(moved),
            "entered_count": len(entered),
            "exited_count": len(exited),
            "improved_count": sum(1 for m in moved if m["rank_delta"] is not None and m["rank_delta"] > 0),
            "declined_count": sum(1 for m in moved if m["rank_delta"] is not None and m["rank_delta"] < 0),
            "unchanged_count": sum(1 for m in moved if m["rank_delta"] == 0),
        },
        "payload_parse_warning": extracted_a["parse_warning"] or extracted_b["parse_warning"],
        "same_timestamp": a.captured_at == b.captured_at,
    }
