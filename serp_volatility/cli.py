#!/usr/bin/env python3
"""Command-line entry point: run one endpoint and print its envelope as JSON.

Logs go to stderr (and optionally a dated file) so stdout stays pure JSON.

Usage:
    python -m serp_volatility.cli keyword_volatility \\
        --fixture data/synthetic/serp_fixture.json \\
        --tenant-id tenant-a --query-id tq-calm --window-days 30

    python -m serp_volatility.cli competitive_pressure \\
        --store supabase --tenant-id tenant-a --window-days 30

Exit code is 0 for a 2xx envelope and 1 otherwise.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from serp_volatility.config import Settings, get_settings
from serp_volatility.service import HeaderTenantResolver, QueryRequest, VolatilityService
from serp_volatility.store import InMemoryStore, SupabaseStore

ENDPOINTS = [
    "keyword_volatility",
    "volatility_breakdown",
    "volatility_spikes",
    "feature_transitions",
    "ai_stability",
    "volatility_momentum",
    "serp_delta",
    "serp_history",
    "project_risk",
    "volatility_summary",
    "volatility_alerts",
    "competitive_pressure",
]

# argparse dest -> service param name
PARAM_FLAGS = {
    "query_id": "tracked_query_id",
    "window_days": "window_days",
    "top_n": "top_n",
    "limit": "limit",
    "alert_threshold": "alert_threshold",
    "min_maturity": "min_maturity",
    "cursor": "cursor",
    "from_observation_id": "from_observation_id",
    "to_observation_id": "to_observation_id",
    "include_payload": "include_payload",
}


def setup_logging(settings: Settings) -> None:
    """Configure root logging: stderr always, a dated file when LOG_DIR is set."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.log_dir is not None:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = settings.log_dir / f"serp_volatility_{datetime.now().strftime('%Y%m%d')}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for CLI usage."""
    parser = argparse.ArgumentParser(
        description="Compute SERP volatility metrics for a tracked query or tenant"
    )
    parser.add_argument("endpoint", choices=ENDPOINTS, help="Which derivation to run")
    parser.add_argument(
        "--store", choices=["fixture", "supabase"], default="fixture",
        help="Where observations come from (default: fixture)"
    )
    parser.add_argument("--fixture", help="Path to a JSON or YAML fixture file")
    parser.add_argument(
        "--tenant-id",
        help="Tenant scope, sent as the X-Tenant-Id header "
             "(default: SERP_VOLATILITY_DEFAULT_TENANT)"
    )
    parser.add_argument("--query-id", help="Tracked query id for per-query endpoints")
    parser.add_argument("--window-days", help="Look-back window in days")
    parser.add_argument("--top-n", help="Number of URLs / spikes / results to return")
    parser.add_argument("--limit", help="Page size for list endpoints")
    parser.add_argument("--alert-threshold", help="Score threshold, 0-100")
    parser.add_argument(
        "--min-maturity", choices=["preliminary", "developing", "stable"],
        help="Minimum evidence maturity for alerts"
    )
    parser.add_argument("--cursor", help="Opaque cursor from a previous page")
    parser.add_argument("--from-observation-id", help="Explicit older observation for serp_delta")
    parser.add_argument("--to-observation-id", help="Explicit newer observation for serp_delta")
    parser.add_argument(
        "--include-payload", choices=["true", "false"],
        help="Include raw payloads in serp_history items"
    )
    args = parser.parse_args(argv)

    if args.store == "fixture" and not args.fixture:
        parser.error("--fixture is required when --store is fixture")
    return args


def build_store(args: argparse.Namespace, settings: Settings):
    if args.store == "supabase":
        return SupabaseStore.from_settings(settings)
    return InMemoryStore.load_fixture(args.fixture)


def build_request(args: argparse.Namespace) -> QueryRequest:
    headers = {"X-Tenant-Id": args.tenant_id} if args.tenant_id else {}
    params: Dict[str, Any] = {}
    for dest, name in PARAM_FLAGS.items():
        value = getattr(args, dest)
        if value is not None:
            params[name] = value
    return QueryRequest(headers=headers, params=params)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point: build the store, run the endpoint, print JSON to stdout."""
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    logger = logging.getLogger(__name__)

    try:
        store = build_store(args, settings)
    except (OSError, ValueError) as exc:
        logger.error("Could not open %s store: %s", args.store, exc)
        return 1

    service = VolatilityService(
        store,
        tenant_resolver=HeaderTenantResolver(settings.default_tenant_id),
    )
    response = service.dispatch(args.endpoint, build_request(args))

    json.dump(response, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0 if 200 <= response["status"] < 300 else 1


if __name__ == "__main__":
    sys.exit(main())
