#!/usr/bin/env python3
"""Validate synthetic scenarios V0-V6 against the volatility service.

Loads the fixture written by generate_synthetic_serps.py, runs the service
with the fixture's anchor as a fixed clock, and checks every scenario's
expected signature. Writes validation_results.json and a markdown report.

Usage:
    python generators/validate_scenarios.py --input-dir data/synthetic
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from serp_volatility.schema import parse_timestamp  # noqa: E402
from serp_volatility.service import QueryRequest, VolatilityService  # noqa: E402
from serp_volatility.store import InMemoryStore  # noqa: E402

FIXTURE_NAME = "serp_fixture.json"
COMPETITOR_URL = "https://competitor.example/best-guide"

EXPECTED = {
    "V0": {"label": "calm", "regime": "calm", "score": 0.0},
    "V1": {"label": "rank_churn", "regime": "shifting", "score": 29.5},
    "V2": {"label": "ai_flip_flop", "regime": "calm", "score": 20.0},
    "V3": {"label": "feature_churn", "regime": "calm", "score": 15.0},
    "V4": {"label": "malformed_payloads", "regime": "calm", "score": 0.0},
    "V5": {"label": "competitor_takeover", "top_url": COMPETITOR_URL, "queries_impacted": 3},
    "V6": {"label": "accelerating_momentum", "direction": "accelerating", "momentum_delta": 29.5},
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate synthetic SERP volatility scenarios")
    parser.add_argument("--input-dir", default="data/synthetic")
    parser.add_argument("--output-dir", default="data/synthetic")
    return parser.parse_args()


class ScenarioRunner:
    """Issues service calls as the synthetic tenant."""

    def __init__(self, fixture_path: Path):
        with fixture_path.open() as f:
            meta = json.load(f)
        self.tenant_id = meta["tenant_id"]
        anchor = parse_timestamp(meta["anchor"])
        self.store = InMemoryStore.load_fixture(fixture_path)
        self.service = VolatilityService(self.store, clock=lambda: anchor)

    def call(self, endpoint: str, tenant_id: str = None, **params) -> Dict[str, Any]:
        request = QueryRequest(
            headers={"X-Tenant-Id": tenant_id or self.tenant_id},
            params=params,
        )
        return self.service.dispatch(endpoint, request)


def _data(resp: Dict[str, Any]) -> Dict[str, Any]:
    if resp["status"] != 200:
        raise AssertionError(f"status {resp['status']}: {resp['body']}")
    return resp["body"]["data"]


def check_regime(runner: ScenarioRunner, sid: str) -> Tuple[bool, Dict[str, Any]]:
    expected = EXPECTED[sid]
    data = _data(runner.call("keyword_volatility", tracked_query_id=f"tq-{sid.lower()}"))
    observed = {
        "volatility_score": data["volatility_score"],
        "volatility_regime": data["volatility_regime"],
        "sample_size": data["sample_size"],
        "parse_warning_count": data["parse_warning_count"],
    }
    passed = (
        data["volatility_regime"] == expected["regime"]
        and data["volatility_score"] == expected["score"]
    )

    if sid == "V2":
        stability = _data(runner.call("ai_stability", tracked_query_id="tq-v2"))
        observed["longest_flip_streak"] = stability["longest_flip_streak"]
        passed = passed and stability["longest_flip_streak"] == data["sample_size"]
    elif sid == "V3":
        transitions = _data(runner.call("feature_transitions", tracked_query_id="tq-v3"))
        observed["distinct_transition_count"] = transitions["distinct_transition_count"]
        passed = passed and transitions["distinct_transition_count"] == 2
        passed = passed and transitions["total_transitions"] == transitions["sample_size"]
    elif sid == "V4":
        passed = passed and data["parse_warning_count"] == data["sample_size"]
    elif sid == "V1":
        # Same query text in another tenant must not be reachable.
        other = runner.call("keyword_volatility", tracked_query_id="tq-v1-other")
        observed["cross_tenant_status"] = other["status"]
        passed = passed and other["status"] == 404

    return passed, observed


def check_pressure(runner: ScenarioRunner, sid: str) -> Tuple[bool, Dict[str, Any]]:
    expected = EXPECTED[sid]
    data = _data(runner.call("competitive_pressure", window_days=30, limit=5))
    top = data["urls"][0] if data["urls"] else {}
    observed = {"top_url": top.get("url"), "queries_impacted": top.get("queries_impacted")}
    passed = (
        top.get("url") == expected["top_url"]
        and top.get("queries_impacted") == expected["queries_impacted"]
    )
    return passed, observed


def check_momentum(runner: ScenarioRunner, sid: str) -> Tuple[bool, Dict[str, Any]]:
    expected = EXPECTED[sid]
    data = _data(runner.call("volatility_momentum", tracked_query_id="tq-v6"))
    observed = {"direction": data["direction"], "momentum_delta": data["momentum_delta"]}
    passed = (
        data["direction"] == expected["direction"]
        and data["momentum_delta"] == expected["momentum_delta"]
    )
    return passed, observed


CHECKS: Dict[str, Callable[[ScenarioRunner, str], Tuple[bool, Dict[str, Any]]]] = {
    "V0": check_regime,
    "V1": check_regime,
    "V2": check_regime,
    "V3": check_regime,
    "V4": check_regime,
    "V5": check_pressure,
    "V6": check_momentum,
}


def run_validation(input_dir: Path, output_dir: Path) -> List[Dict[str, Any]]:
    runner = ScenarioRunner(input_dir / FIXTURE_NAME)
    results = []
    for sid, check in CHECKS.items():
        try:
            passed, observed = check(runner, sid)
        except AssertionError as exc:
            passed, observed = False, {"error": str(exc)}
        results.append({
            "scenario_id": sid,
            "expected_label": EXPECTED[sid]["label"],
            "expected": {k: v for k, v in EXPECTED[sid].items() if k != "label"},
            "observed": observed,
            "overall_pass": passed,
        })

    output_dir.mkdir(parents=True, exist_ok=True)
    with (output_dir / "validation_results.json").open("w") as f:
        json.dump(results, f, indent=2)

    total = len(results)
    passed_count = sum(1 for r in results if r["overall_pass"])
    with (output_dir / "validation_report.md").open("w") as f:
        f.write("# Synthetic Volatility Validation Report\n\n")
        f.write(f"- Total scenarios: {total}\n")
        f.write(f"- Passed scenarios: {passed_count}\n")
        f.write(f"- Failed scenarios: {total - passed_count}\n\n")
        f.write("## Per-Scenario Results\n")
        f.write("| Scenario | Expected | Observed | Overall Pass |\n")
        f.write("|---|---|---|---|\n")
        for r in results:
            f.write(
                f"| {r['scenario_id']} | {r['expected_label']} | "
                f"{json.dumps(r['observed'], sort_keys=True)} | {str(r['overall_pass']).lower()} |\n"
            )
    return results


def main() -> None:
    args = parse_args()
    project_root = Path(__file__).resolve().parent.parent
    input_dir = (project_root / args.input_dir).resolve()
    output_dir = (project_root / args.output_dir).resolve()
    results = run_validation(input_dir, output_dir)
    print(json.dumps({
        "total": len(results),
        "passed": sum(1 for r in results if r["overall_pass"]),
        "failed": [r["scenario_id"] for r in results if not r["overall_pass"]],
    }, indent=2))


if __name__ == "__main__":
    main()
