#!/usr/bin/env python3
"""Generate a synthetic SERP observation fixture for scenarios V0-V6.

Each scenario is one (or, for V5, three) tracked queries whose capture
history has a known volatility signature:

    V0  calm                  identical result sets every capture
    V1  rank churn            20 URLs, full rank reversal every capture
    V2  AI flip-flop          stable ranks, AI panel toggles every capture
    V3  feature churn         provider "items" shape, 5 features on/off
    V4  malformed payloads    every other capture is unparseable
    V5  competitor takeover   one domain holds rank 1 across three queries
    V6  accelerating momentum calm prior 30 days, rank reversal in last 30

A second tenant owns a query with the same text as V1 so cross-tenant
isolation can be checked against the same fixture.

All timestamps are relative to --anchor, which the validator also uses as
its fixed clock. Output is JSON that InMemoryStore.load_fixture reads.

Usage:
    python generators/generate_synthetic_serps.py --seed 42 --output-dir data/synthetic
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import random
from pathlib import Path
from typing import Any, Dict, List, Optional

TENANT_ID = "tenant-synth"
OTHER_TENANT_ID = "tenant-other"
DEFAULT_ANCHOR = "2026-03-01T00:00:00Z"
FIXTURE_NAME = "serp_fixture.json"

URL_POOL_SIZE = 20
CAPTURES_PER_SCENARIO = 12
COMPETITOR_URL = "https://competitor.example/best-guide"
FEATURE_SET = ["featured_snippet", "local_pack", "people_also_ask", "top_stories", "video"]

SCENARIOS = {
    "V0": {"query": "calm keyword", "label": "calm"},
    "V1": {"query": "rank churn keyword", "label": "rank_churn"},
    "V2": {"query": "ai flip keyword", "label": "ai_flip_flop"},
    "V3": {"query": "feature churn keyword", "label": "feature_churn"},
    "V4": {"query": "malformed keyword", "label": "malformed_payloads"},
    "V5": {"query": "takeover keyword", "label": "competitor_takeover"},
    "V6": {"query": "momentum keyword", "label": "accelerating_momentum"},
}

# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def url_pool(sid: str, rng: random.Random) -> List[str]:
    urls = [f"https://{sid.lower()}-site{i:02d}.example/page" for i in range(URL_POOL_SIZE)]
    rng.shuffle(urls)
    return urls


def simple_payload(urls: List[str], features: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "results": [{"url": u, "rank": i + 1} for i, u in enumerate(urls)],
        "features": list(features or []),
    }


def items_payload(urls: List[str], features: List[str]) -> Dict[str, Any]:
    items: List[Dict[str, Any]] = [{"type": f} for f in features]
    items.extend(
        {"type": "organic", "url": u, "rank_absolute": i + 1, "rank_group": i + 1}
        for i, u in enumerate(urls)
    )
    return {"items": items}


def observation_row(
    sid: str,
    tenant_id: str,
    query: str,
    idx: int,
    captured_at: dt.datetime,
    payload: Any,
    ai_status: str = "absent",
) -> Dict[str, Any]:
    return {
        "id": f"{tenant_id}-{sid.lower()}-obs-{idx:03d}",
        "tenant_id": tenant_id,
        "query": query,
        "locale": "en-US",
        "device": "desktop",
        "captured_at": captured_at.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
        "raw_payload": payload,
        "ai_status": ai_status,
        "source": "synthetic",
    }


def tracked_row(sid: str, tenant_id: str, query: str, suffix: str = "") -> Dict[str, Any]:
    return {
        "id": f"tq-{sid.lower()}{suffix}",
        "tenant_id": tenant_id,
        "query": query,
        "locale": "en-US",
        "device": "desktop",
        "is_primary": sid == "V0",
        "is_active": True,
    }


def capture_times(anchor: dt.datetime, count: int, first_days_ago: int, step_days: int) -> List[dt.datetime]:
    """`count` captures starting `first_days_ago` before anchor, at 06:00 offsets."""
    start = anchor - dt.timedelta(days=first_days_ago) + dt.timedelta(hours=6)
    return [start + dt.timedelta(days=step_days * i) for i in range(count)]


# ---------------------------------------------------------------------------
# Scenario generation
# ---------------------------------------------------------------------------


def generate_scenario(sid: str, anchor: dt.datetime, rng: random.Random) -> Dict[str, List[Dict[str, Any]]]:
    query = SCENARIOS[sid]["query"]
    urls = url_pool(sid, rng)
    reversed_urls = list(reversed(urls))
    times = capture_times(anchor, CAPTURES_PER_SCENARIO, CAPTURES_PER_SCENARIO, 1)
    tracked = [tracked_row(sid, TENANT_ID, query)]
    rows: List[Dict[str, Any]] = []

    if sid == "V0":
        rows = [observation_row(sid, TENANT_ID, query, i, t, simple_payload(urls)) for i, t in enumerate(times)]

    elif sid == "V1":
        rows = [
            observation_row(sid, TENANT_ID, query, i, t, simple_payload(urls if i % 2 == 0 else reversed_urls))
            for i, t in enumerate(times)
        ]
        # Same query text in another tenant, never visible to TENANT_ID.
        tracked.append(tracked_row(sid, OTHER_TENANT_ID, query, suffix="-other"))
        rows.extend(
            observation_row(sid, OTHER_TENANT_ID, query, i, t, simple_payload(urls))
            for i, t in enumerate(times)
        )

    elif sid == "V2":
        rows = [
            observation_row(
                sid, TENANT_ID, query, i, t, simple_payload(urls),
                ai_status="present" if i % 2 == 0 else "absent",
            )
            for i, t in enumerate(times)
        ]

    elif sid == "V3":
        rows = [
            observation_row(sid, TENANT_ID, query, i, t, items_payload(urls, FEATURE_SET if i % 2 == 0 else []))
            for i, t in enumerate(times)
        ]

    elif sid == "V4":
        garbage = ["<html>captcha</html>", {"error": "quota exceeded"}, None]
        rows = [
            observation_row(
                sid, TENANT_ID, query, i, t,
                simple_payload(urls) if i % 2 == 0 else garbage[(i // 2) % len(garbage)],
            )
            for i, t in enumerate(times)
        ]

    elif sid == "V5":
        tracked = []
        for n in range(3):
            sub_sid = f"V5{'abc'[n]}"
            sub_query = f"{query} {n + 1}"
            sub_urls = url_pool(sub_sid, rng)
            tracked.append(tracked_row(sub_sid, TENANT_ID, sub_query))
            rows.extend(
                observation_row(sub_sid, TENANT_ID, sub_query, i, t, simple_payload([COMPETITOR_URL] + sub_urls[:9]))
                for i, t in enumerate(times)
            )

    elif sid == "V6":
        prior = capture_times(anchor, 10, 55, 2)
        current = capture_times(anchor, 10, 25, 2)
        rows = [observation_row(sid, TENANT_ID, query, i, t, simple_payload(urls)) for i, t in enumerate(prior)]
        rows.extend(
            observation_row(
                sid, TENANT_ID, query, len(prior) + i, t,
                simple_payload(urls if i % 2 == 0 else reversed_urls),
            )
            for i, t in enumerate(current)
        )

    return {"tracked_queries": tracked, "observations": rows}


def parse_anchor(value: str) -> dt.datetime:
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def generate_fixture(anchor: dt.datetime, seed: int) -> Dict[str, Any]:
    rng = random.Random(seed)
    tracked: List[Dict[str, Any]] = []
    observations: List[Dict[str, Any]] = []
    for sid in SCENARIOS:
        part = generate_scenario(sid, anchor, rng)
        tracked.extend(part["tracked_queries"])
        observations.extend(part["observations"])

    return {
        "anchor": anchor.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "seed": seed,
        "tenant_id": TENANT_ID,
        "tracked_queries": tracked,
        "observations": observations,
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a synthetic SERP observation fixture")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--anchor", default=DEFAULT_ANCHOR, help="Reference 'now' for all timestamps")
    parser.add_argument("--output-dir", default="data/synthetic")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    project_root = Path(__file__).resolve().parent.parent
    output_dir = (project_root / args.output_dir).resolve()
    output_dir.mkdir(parents=True, exist_ok=True)

    fixture = generate_fixture(parse_anchor(args.anchor), args.seed)
    with (output_dir / FIXTURE_NAME).open("w") as f:
        json.dump(fixture, f, indent=2)

    summary = {
        "seed": args.seed,
        "anchor": fixture["anchor"],
        "scenario_count": len(SCENARIOS),
        "tracked_query_count": len(fixture["tracked_queries"]),
        "observation_count": len(fixture["observations"]),
    }
    with (output_dir / "generation_summary.json").open("w") as f:
        json.dump(summary, f, indent=2)
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
