"""Shared test fixtures for SERP volatility tests."""

from datetime import datetime, timedelta, timezone

import pytest
from pathlib import Path

from serp_volatility.models import Observation, TrackedQuery
from serp_volatility.store import InMemoryStore

# Project root
ROOT = Path(__file__).parent.parent

KNOWLEDGE_DIR = ROOT / "data" / "knowledge"

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def payload(ranks, features=None):
    """Simple-shape payload from {url: rank} (insertion order irrelevant)."""
    return {
        "results": [{"url": url, "rank": rank} for url, rank in ranks.items()],
        "features": list(features or []),
    }


def make_obs(
    obs_id,
    captured_at,
    ranks=None,
    features=None,
    ai_status="absent",
    tenant_id=TENANT_A,
    query="running shoes",
    raw_payload=None,
):
    """Build an Observation with a simple-shape payload unless raw_payload is given."""
    if raw_payload is None:
        raw_payload = payload(ranks or {}, features)
    return Observation(
        id=obs_id,
        tenant_id=tenant_id,
        query=query,
        locale="en-US",
        device="desktop",
        captured_at=captured_at,
        raw_payload=raw_payload,
        ai_status=ai_status,
    )


def make_tq(tq_id, query="running shoes", tenant_id=TENANT_A, is_active=True):
    return TrackedQuery(
        id=tq_id,
        tenant_id=tenant_id,
        query=query,
        locale="en-US",
        device="desktop",
        is_active=is_active,
    )


def days_ago(n, hours=0):
    return NOW - timedelta(days=n, hours=hours)


@pytest.fixture
def knowledge_dir():
    """Path to the data/knowledge directory."""
    return KNOWLEDGE_DIR


@pytest.fixture
def calm_observations():
    """Four identical captures: zero volatility."""
    ranks = {"https://a.example": 1, "https://b.example": 2, "https://c.example": 3}
    return [make_obs(f"calm-{i}", days_ago(4 - i), ranks) for i in range(4)]


@pytest.fixture
def churn_observations():
    """Three captures where a.example drops from 1 to 5 and back, c.example exits at t2."""
    return [
        make_obs("churn-0", days_ago(3), {"https://a.example": 1, "https://b.example": 2, "https://c.example": 3}),
        make_obs("churn-1", days_ago(2), {"https://a.example": 5, "https://b.example": 2, "https://c.example": 3},
                 features=["video"], ai_status="present"),
        make_obs("churn-2", days_ago(1), {"https://a.example": 1, "https://b.example": 2},
                 features=["video", "people_also_ask"]),
    ]


@pytest.fixture
def tenant_store(churn_observations, calm_observations):
    """Two tenants. tenant-a owns a churning and a calm query; tenant-b owns one query."""
    calm = [
        make_obs(o.id, o.captured_at, raw_payload=o.raw_payload, query="trail shoes")
        for o in calm_observations
    ]
    other = [
        make_obs(f"b-{i}", days_ago(3 - i), {"https://z.example": 1 + i}, tenant_id=TENANT_B)
        for i in range(3)
    ]
    return InMemoryStore(
        tracked_queries=[
            make_tq("tq-churn"),
            make_tq("tq-calm", query="trail shoes"),
            make_tq("tq-b", tenant_id=TENANT_B),
        ],
        observations=churn_observations + calm + other,
    )
