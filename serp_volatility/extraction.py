"""SERP payload extraction: organic results and feature labels.

Every other module reads ranks and features through this one. If two
diagnostics ever disagree about a URL's rank or a feature label, the bug is
not here by construction: they both called the same functions.

Known payload shapes:
1. Provider "items" shape -- payload["items"] is a list. Organic results are
   items with type == "organic" and a string url; rank comes from
   rank_absolute, then position. Every other non-empty item type is a SERP
   feature (featured_snippet, people_also_ask, local_pack, ...).
2. Simple shape -- payload["results"] is a list of {url, rank|position}
   objects and payload["features"] lists feature labels (strings or
   {"type": ...} objects). Used by fixtures and hand-built captures.

Anything else yields empty results plus parse_warning=True. Nothing in this
module raises on bad input: one malformed observation must not fail an
aggregate that spans hundreds of them.

Usage (import):
    from serp_volatility.extraction import extract_result_set
    extracted = extract_result_set(observation.raw_payload)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

# Reserved separator for feature transition keys (U+2192 RIGHT ARROW).
# Labels containing it are dropped during extraction so a transition key can
# always be split back into its two sides.
TRANSITION_SEPARATOR = "→"

ORGANIC_TYPE = "organic"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_rank(value: Any) -> bool:
    """True for int/float ranks. bool is an int subclass and is rejected."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _first_rank(item: Dict[str, Any], *fields: str) -> Optional[float]:
    """Return the first numeric rank among the given fields, else None."""
    for name in fields:
        value = item.get(name)
        if _is_rank(value):
            return value
    return None


def _domain_of(url: str) -> Optional[str]:
    """Hostname of a URL, or None when it has none or cannot be parsed."""
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def _result_entry(item: Dict[str, Any], *rank_fields: str) -> Dict[str, Any]:
    """One organic result: url, domain (payload value or hostname), rank, title."""
    domain = item.get("domain")
    title = item.get("title")
    return {
        "url": item["url"],
        "domain": domain if isinstance(domain, str) else _domain_of(item["url"]),
        "rank": _first_rank(item, *rank_fields),
        "title": title if isinstance(title, str) else None,
    }


def _sort_key(entry: Dict[str, Any]) -> Tuple[int, float, str]:
    # rank ASC with nulls last, then url ASC
    rank = entry["rank"]
    if rank is None:
        return (1, 0, entry["url"])
    return (0, rank, entry["url"])


def _dedupe_sorted(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sort, then keep the first occurrence of each URL (lowest rank wins)."""
    seen = set()
    deduped = []
    for entry in sorted(entries, key=_sort_key):
        if entry["url"] in seen:
            continue
        seen.add(entry["url"])
        deduped.append(entry)
    return deduped


def _valid_label(label: Any) -> bool:
    return isinstance(label, str) and len(label) > 0 and TRANSITION_SEPARATOR not in label


# ---------------------------------------------------------------------------
# Organic results
# ---------------------------------------------------------------------------

def extract_organic_results(raw_payload: Any) -> Dict[str, Any]:
    """Extract ranked organic results from a raw SERP payload.

    Args:
        raw_payload: Opaque JSON value as stored on the observation.

    Returns:
        {"results": [{"url": str, "domain": str|None,
                      "rank": int|float|None, "title": str|None}, ...],
         "parse_warning": bool}
        Results are sorted rank ASC (nulls last), url ASC, one entry per URL.
    """
    if not isinstance(raw_payload, dict):
        return {"results": [], "parse_warning": True}

    items = raw_payload.get("items")
    if isinstance(items, list):
        organic = [
            _result_entry(item, "rank_absolute", "position")
            for item in items
            if isinstance(item, dict)
            and item.get("type") == ORGANIC_TYPE
            and isinstance(item.get("url"), str)
        ]
        # A non-empty items list with no organic entries means the provider
        # changed shape under us; an empty list is just an empty SERP.
        parse_warning = len(organic) == 0 and len(items) > 0
        return {"results": _dedupe_sorted(organic), "parse_warning": parse_warning}

    results = raw_payload.get("results")
    if isinstance(results, list):
        simple = [
            _result_entry(item, "rank", "position")
            for item in results
            if isinstance(item, dict) and isinstance(item.get("url"), str)
        ]
        return {"results": _dedupe_sorted(simple), "parse_warning": False}

    return {"results": [], "parse_warning": True}


# ---------------------------------------------------------------------------
# Feature labels
# ---------------------------------------------------------------------------

def extract_feature_set(raw_payload: Any) -> List[str]:
    """Return the distinct SERP feature labels of a payload, sorted ascending.

    Empty list when no features are present or the payload is unrecognized.
    """
    if not isinstance(raw_payload, dict):
        return []

    labels = set()

    items = raw_payload.get("items")
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type != ORGANIC_TYPE and _valid_label(item_type):
                labels.add(item_type)
        return sorted(labels)

    features = raw_payload.get("features")
    if isinstance(features, list):
        for feature in features:
            if isinstance(feature, dict):
                feature = feature.get("type")
            if _valid_label(feature):
                labels.add(feature)

    return sorted(labels)


def extract_result_set(raw_payload: Any) -> Dict[str, Any]:
    """Full extraction for one observation: results, features, warning flag."""
    organic = extract_organic_results(raw_payload)
    return {
        "results": organic["results"],
        "feature_set": extract_feature_set(raw_payload),
        "parse_warning": organic["parse_warning"],
    }


def rank_lookup(results: List[Dict[str, Any]]) -> Dict[str, Optional[float]]:
    """url -> rank map. Input is already deduplicated by extract_organic_results."""
    return {r["url"]: r["rank"] for r in results}


def top_ranked_urls(results: List[Dict[str, Any]], n: int = 3) -> Dict[str, float]:
    """The n best-ranked URLs with a non-null rank, as url -> rank."""
    ranked = [r for r in results if r["rank"] is not None]
    return {r["url"]: r["rank"] for r in ranked[:n]}
