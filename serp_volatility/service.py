#!/usr/bin/env python3
"""Request handling: tenant scope, parameter validation and envelopes.

One handler per derivation. Every handler follows the same sequence:

1. Resolve the tenant from the X-Tenant-Id header (never from params).
2. Validate every parameter. Out-of-range values are rejected, never clamped,
   and nothing touches the store until validation passes.
3. Read the clock exactly once. Every window boundary in the request derives
   from that single `now`.
4. Load the minimal ordered slice of observations for the tenant.
5. Run the scorer / derivation and wrap the result in an envelope.

Envelopes:
    success  {"status": 200, "body": {"data": {...}}}
    failure  {"status": 400|404|500, "body": {"error": {"code", "message"}}}

Usage (import):
    from serp_volatility.service import QueryRequest, VolatilityService
    service = VolatilityService(store)
    resp = service.keyword_volatility(QueryRequest(
        headers={"X-Tenant-Id": "tenant-a"},
        params={"tracked_query_id": "tq-1", "window_days": "30"},
    ))
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from serp_volatility.decisions import (
    MOMENTUM_WINDOW_DAYS,
    competitive_pressure,
    momentum_windows,
    project_risk_index,
    volatility_alerts,
    volatility_momentum,
    volatility_summary,
)
from serp_volatility.delta import compare_results
from serp_volatility.diagnostics import (
    ai_stability,
    feature_transitions,
    url_attribution,
    volatility_spikes,
)
from serp_volatility.errors import (
    InvalidInputError,
    NotFoundError,
    VolatilityError,
    server_error,
)
from serp_volatility.extraction import extract_organic_results
from serp_volatility.models import Observation, TrackedQuery
from serp_volatility.schema import (
    RowError,
    format_timestamp,
    format_timestamp_precise,
    parse_timestamp,
)
from serp_volatility.scoring import (
    MATURITY_RANK,
    classify_maturity,
    classify_regime,
    compute_volatility,
)
from serp_volatility.store import ObservationStore, TrackedQueryStore, group_by_key

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parameter bounds: (min, max, default)
# ---------------------------------------------------------------------------

WINDOW_DAYS = (1, 365, None)
PRESSURE_WINDOW_DAYS = (1, 90, None)
ALERT_THRESHOLD = (0, 100, 60)
BREAKDOWN_TOP_N = (1, 50, 20)
SPIKES_TOP_N = (1, 10, 3)
ALERTS_LIMIT = (1, 50, 20)
PRESSURE_LIMIT = (1, 50, 20)
HISTORY_LIMIT = (1, 200, 50)
HISTORY_TOP_N = (1, 20, 10)
MIN_MATURITY_DEFAULT = "developing"

TENANT_HEADER = "X-Tenant-Id"
ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")
INTEGER_RE = re.compile(r"^-?\d+$")


# ---------------------------------------------------------------------------
# Request + tenant resolution
# ---------------------------------------------------------------------------

@dataclass
class QueryRequest:
    """Transport-neutral request: headers plus flat query parameters."""

    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class HeaderTenantResolver:
    """Map a request onto a tenant id using the X-Tenant-Id header only.

    With a default tenant configured, a request without the header falls back
    to it. A header that is present but malformed is always rejected.
    """

    def __init__(self, default_tenant_id: Optional[str] = None):
        self.default_tenant_id = default_tenant_id

    def resolve(self, request: QueryRequest) -> str:
        value = request.header(TENANT_HEADER)
        if value is None or value == "":
            if self.default_tenant_id:
                return self.default_tenant_id
            raise InvalidInputError(f"{TENANT_HEADER} header is required")
        if not ID_RE.match(value):
            raise InvalidInputError(f"{TENANT_HEADER} must be a valid identifier")
        return value


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------

def parse_int_param(
    params: Dict[str, Any],
    name: str,
    bounds: Tuple[int, int, Optional[int]],
    required: bool = False,
) -> Optional[int]:
    """Integer param within [min, max]. Returns the default when absent."""
    low, high, default = bounds
    raw = params.get(name)
    if raw is None:
        if required:
            raise InvalidInputError(f"{name} is required")
        return default

    if isinstance(raw, bool):
        raise InvalidInputError(f"{name} must be an integer")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and INTEGER_RE.match(raw.strip()):
        value = int(raw.strip())
    else:
        raise InvalidInputError(f"{name} must be an integer")

    if value < low:
        raise InvalidInputError(f"{name} must be >= {low}")
    if value > high:
        raise InvalidInputError(f"{name} must be <= {high}")
    return value


def parse_id_param(params: Dict[str, Any], name: str, required: bool = True) -> Optional[str]:
    raw = params.get(name)
    if raw is None or raw == "":
        if required:
            raise InvalidInputError(f"{name} is required")
        return None
    if not isinstance(raw, str) or not ID_RE.match(raw):
        raise InvalidInputError(f"{name} must be a valid identifier")
    return raw


def parse_bool_param(params: Dict[str, Any], name: str, default: bool = False) -> bool:
    raw = params.get(name)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if raw == "true":
        return True
    if raw == "false":
        return False
    raise InvalidInputError(f"{name} must be true or false")


def parse_maturity_param(params: Dict[str, Any], name: str = "min_maturity") -> str:
    raw = params.get(name)
    if raw is None:
        return MIN_MATURITY_DEFAULT
    if raw not in MATURITY_RANK:
        raise InvalidInputError(
            f"{name} must be one of: {', '.join(MATURITY_RANK)}"
        )
    return raw


def encode_history_cursor(obs: Observation) -> str:
    raw = f"{format_timestamp_precise(obs.captured_at)}|{obs.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_history_cursor(cursor: str) -> Optional[Tuple[datetime, str]]:
    """(captured_at, id) or None when the cursor is malformed."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    captured_at, sep, obs_id = raw.rpartition("|")
    if not sep or not ID_RE.match(obs_id):
        return None
    try:
        return parse_timestamp(captured_at), obs_id
    except RowError:
        return None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class VolatilityService:
    """Read-only query surface over a tracked query store and an observation store."""

    def __init__(
        self,
        store: Any,
        observation_store: Optional[ObservationStore] = None,
        tenant_resolver: Optional[HeaderTenantResolver] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tracked_queries: TrackedQueryStore = store
        self.observations: ObservationStore = observation_store or store
        self.tenant_resolver = tenant_resolver or HeaderTenantResolver()
        self.clock = clock

    # -- dispatch --

    def endpoints(self) -> Dict[str, Callable[[QueryRequest], Dict[str, Any]]]:
        return {
            "keyword_volatility": self.keyword_volatility,
            "volatility_breakdown": self.volatility_breakdown,
            "volatility_spikes": self.volatility_spikes,
            "feature_transitions": self.feature_transitions,
            "ai_stability": self.ai_stability,
            "volatility_momentum": self.volatility_momentum,
            "serp_delta": self.serp_delta,
            "serp_history": self.serp_history,
            "project_risk": self.project_risk,
            "volatility_summary": self.volatility_summary,
            "volatility_alerts": self.volatility_alerts,
            "competitive_pressure": self.competitive_pressure,
        }

    def dispatch(self, endpoint: str, request: QueryRequest) -> Dict[str, Any]:
        handler = self.endpoints().get(endpoint)
        if handler is None:
            return _error_envelope(InvalidInputError(f"Unknown endpoint: {endpoint}"))
        return handler(request)

    def _run(self, name: str, request: QueryRequest, compute) -> Dict[str, Any]:
        try:
            data = compute(request)
        except VolatilityError as exc:
            logger.info("%s -> %d %s: %s", name, exc.status, exc.code, exc.message)
            return _error_envelope(exc)
        except Exception:
            logger.exception("%s failed", name)
            return _error_envelope(server_error())
        return {"status": 200, "body": {"data": data}}

    # -- shared steps --

    def _tracked_query(self, tenant_id: str, tracked_query_id: str) -> TrackedQuery:
        tq = self.tracked_queries.get_tracked_query(tenant_id, tracked_query_id)
        if tq is None:
            raise NotFoundError()
        return tq

    def _scope(self, tq: TrackedQuery, window_days: Optional[int], now: datetime) -> Dict[str, Any]:
        window_start = _window_start(now, window_days)
        return {
            "tracked_query_id": tq.id,
            "query": tq.query,
            "locale": tq.locale,
            "device": tq.device,
            "window_days": window_days,
            "window_start_at": format_timestamp(window_start),
            "computed_at": format_timestamp(now),
        }

    def _windowed_query(self, request: QueryRequest, extra=None):
        """Common prologue for single-query handlers with an optional window."""
        tenant_id = self.tenant_resolver.resolve(request)
        tracked_query_id = parse_id_param(request.params, "tracked_query_id")
        window_days = parse_int_param(request.params, "window_days", WINDOW_DAYS)
        parsed = extra(request.params) if extra else {}
        now = self.clock()

        tq = self._tracked_query(tenant_id, tracked_query_id)
        observations = self.observations.list_observations(
            tenant_id, tq.key, _window_start(now, window_days)
        )
        return tq, observations, self._scope(tq, window_days, now), parsed

    def _tenant_entries(self, tenant_id: str, since: Optional[datetime]):
        tracked = self.tracked_queries.list_tracked_queries(tenant_id)
        if not tracked:
            return []
        groups = group_by_key(self.observations.list_tenant_observations(tenant_id, since))
        return [(tq, groups.get(tq.key, [])) for tq in tracked]

    # -- single tracked query --

    def keyword_volatility(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("keyword_volatility", request, self._keyword_volatility)

    def _keyword_volatility(self, request):
        tq, observations, scope, parsed = self._windowed_query(
            request,
            lambda p: {"alert_threshold": parse_int_param(p, "alert_threshold", ALERT_THRESHOLD)},
        )
        profile = compute_volatility(observations)
        _warn_parse(tq, profile)
        threshold = parsed["alert_threshold"]
        sample_size = profile["sample_size"]

        data = dict(scope)
        data.update(profile)
        data.update({
            "observation_count": len(observations),
            "alert_threshold": threshold,
            "exceeds_threshold": sample_size > 0 and profile["volatility_score"] >= threshold,
            "volatility_regime": classify_regime(profile["volatility_score"]) if sample_size else None,
            "maturity": classify_maturity(sample_size),
        })
        return data

    def volatility_breakdown(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("volatility_breakdown", request, self._volatility_breakdown)

    def _volatility_breakdown(self, request):
        tq, observations, scope, parsed = self._windowed_query(
            request,
            lambda p: {"top_n": parse_int_param(p, "top_n", BREAKDOWN_TOP_N)},
        )
        profile = compute_volatility(observations)
        _warn_parse(tq, profile)
        attribution = url_attribution(observations, parsed["top_n"])

        data = dict(scope)
        data.update({
            "top_n": parsed["top_n"],
            "sample_size": profile["sample_size"],
            "volatility_score": profile["volatility_score"],
            "volatility_regime": (
                classify_regime(profile["volatility_score"]) if profile["sample_size"] else None
            ),
            "components": {
                "rank_volatility_component": profile["rank_volatility_component"],
                "ai_overview_component": profile["ai_overview_component"],
                "feature_volatility_component": profile["feature_volatility_component"],
            },
            "url_count": attribution["url_count"],
            "urls": attribution["urls"],
        })
        return data

    def volatility_spikes(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("volatility_spikes", request, self._volatility_spikes)

    def _volatility_spikes(self, request):
        _, observations, scope, parsed = self._windowed_query(
            request,
            lambda p: {"top_n": parse_int_param(p, "top_n", SPIKES_TOP_N)},
        )
        data = dict(scope)
        data["top_n"] = parsed["top_n"]
        data.update(volatility_spikes(observations, parsed["top_n"]))
        return data

    def feature_transitions(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("feature_transitions", request, self._feature_transitions)

    def _feature_transitions(self, request):
        _, observations, scope, _ = self._windowed_query(request)
        data = dict(scope)
        data.update(feature_transitions(observations))
        return data

    def ai_stability(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("ai_stability", request, self._ai_stability)

    def _ai_stability(self, request):
        _, observations, scope, _ = self._windowed_query(request)
        data = dict(scope)
        data.update(ai_stability(observations))
        return data

    def volatility_momentum(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("volatility_momentum", request, self._volatility_momentum)

    def _volatility_momentum(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        tracked_query_id = parse_id_param(request.params, "tracked_query_id")
        now = self.clock()

        tq = self._tracked_query(tenant_id, tracked_query_id)
        bounds = momentum_windows(now, MOMENTUM_WINDOW_DAYS)
        observations = self.observations.list_observations(tenant_id, tq.key, bounds["prior_start"])

        data = self._scope(tq, None, now)
        data.update(volatility_momentum(observations, now, MOMENTUM_WINDOW_DAYS))
        return data

    def serp_delta(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("serp_delta", request, self._serp_delta)

    def _serp_delta(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        params = request.params
        tracked_query_id = parse_id_param(params, "tracked_query_id")
        from_id = parse_id_param(params, "from_observation_id", required=False)
        to_id = parse_id_param(params, "to_observation_id", required=False)
        if (from_id is None) != (to_id is None):
            raise InvalidInputError(
                "from_observation_id and to_observation_id must both be provided, or both omitted"
            )
        now = self.clock()

        tq = self._tracked_query(tenant_id, tracked_query_id)
        scope = self._scope(tq, None, now)

        if from_id is not None:
            obs_from = self.observations.get_observation(tenant_id, from_id)
            obs_to = self.observations.get_observation(tenant_id, to_id)
            if obs_from is None or obs_to is None:
                raise NotFoundError("Observation not found")
            for name, obs in (("from_observation_id", obs_from), ("to_observation_id", obs_to)):
                if obs.key != tq.key:
                    raise InvalidInputError(
                        f"{name} does not match the tracked query's query/locale/device"
                    )
        else:
            latest = self.observations.latest_observations(tenant_id, tq.key, 2)
            if len(latest) < 2:
                scope.update({
                    "delta": None,
                    "insufficient_observations": True,
                    "observation_count": len(latest),
                    "from_observation": _observation_ref(latest[0]) if latest else None,
                    "to_observation": None,
                })
                return scope
            obs_to, obs_from = latest[0], latest[1]

        scope.update({
            "delta": compare_results(obs_from, obs_to),
            "insufficient_observations": False,
            "from_observation": _observation_ref(obs_from),
            "to_observation": _observation_ref(obs_to),
        })
        return scope

    def serp_history(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("serp_history", request, self._serp_history)

    def _serp_history(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        params = request.params
        tracked_query_id = parse_id_param(params, "tracked_query_id")
        window_days = parse_int_param(params, "window_days", WINDOW_DAYS)
        limit = parse_int_param(params, "limit", HISTORY_LIMIT)
        top_n = parse_int_param(params, "top_n", HISTORY_TOP_N)
        include_payload = parse_bool_param(params, "include_payload")
        raw_cursor = params.get("cursor")
        # Malformed cursor: start from the newest observation
        before = decode_history_cursor(raw_cursor) if raw_cursor else None
        now = self.clock()

        tq = self._tracked_query(tenant_id, tracked_query_id)
        page = self.observations.latest_observations(
            tenant_id, tq.key, limit + 1, _window_start(now, window_days), before
        )
        has_more = len(page) > limit
        page = page[:limit]

        items = []
        for obs in page:
            extracted = extract_organic_results(obs.raw_payload)
            item = {
                "observation_id": obs.id,
                "captured_at": format_timestamp(obs.captured_at),
                "ai_status": obs.ai_status,
                "payload_parse_warning": extracted["parse_warning"],
                "top_results": extracted["results"][:top_n],
            }
            if include_payload:
                item["raw_payload"] = obs.raw_payload
            items.append(item)

        data = self._scope(tq, window_days, now)
        data.update({
            "limit": limit,
            "top_n": top_n,
            "items": items,
            "next_cursor": encode_history_cursor(page[-1]) if has_more else None,
        })
        return data

    # -- tenant scope --

    def project_risk(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("project_risk", request, self._project_risk)

    def _project_risk(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        window_days = parse_int_param(request.params, "window_days", WINDOW_DAYS)
        now = self.clock()

        entries = self._tenant_entries(tenant_id, _window_start(now, window_days))
        data = _tenant_scope(tenant_id, window_days, now)
        data.update(project_risk_index(entries))
        return data

    def volatility_summary(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("volatility_summary", request, self._volatility_summary)

    def _volatility_summary(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        now = self.clock()

        entries = self._tenant_entries(tenant_id, None)
        data = _tenant_scope(tenant_id, None, now)
        data.update(volatility_summary(entries))
        return data

    def volatility_alerts(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("volatility_alerts", request, self._volatility_alerts)

    def _volatility_alerts(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        params = request.params
        window_days = parse_int_param(params, "window_days", WINDOW_DAYS)
        threshold = parse_int_param(params, "alert_threshold", ALERT_THRESHOLD)
        min_maturity = parse_maturity_param(params)
        limit = parse_int_param(params, "limit", ALERTS_LIMIT)
        cursor = params.get("cursor")
        if cursor is not None and not isinstance(cursor, str):
            raise InvalidInputError("cursor must be a string")
        now = self.clock()

        entries = self._tenant_entries(tenant_id, _window_start(now, window_days))
        data = _tenant_scope(tenant_id, window_days, now)
        data.update({"alert_threshold": threshold, "min_maturity": min_maturity, "limit": limit})
        data.update(volatility_alerts(entries, threshold, min_maturity, limit, cursor))
        return data

    def competitive_pressure(self, request: QueryRequest) -> Dict[str, Any]:
        return self._run("competitive_pressure", request, self._competitive_pressure)

    def _competitive_pressure(self, request):
        tenant_id = self.tenant_resolver.resolve(request)
        window_days = parse_int_param(
            request.params, "window_days", PRESSURE_WINDOW_DAYS, required=True
        )
        limit = parse_int_param(request.params, "limit", PRESSURE_LIMIT)
        now = self.clock()

        entries = self._tenant_entries(tenant_id, _window_start(now, window_days))
        data = _tenant_scope(tenant_id, window_days, now)
        data["limit"] = limit
        data.update(competitive_pressure(entries, limit))
        return data


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_envelope(exc: VolatilityError) -> Dict[str, Any]:
    return {"status": exc.status, "body": exc.to_body()}


def _window_start(now: datetime, window_days: Optional[int]) -> Optional[datetime]:
    if window_days is None:
        return None
    return now - timedelta(days=window_days)


def _tenant_scope(tenant_id: str, window_days: Optional[int], now: datetime) -> Dict[str, Any]:
    return {
        "tenant_id": tenant_id,
        "window_days": window_days,
        "window_start_at": format_timestamp(_window_start(now, window_days)),
        "computed_at": format_timestamp(now),
    }


def _observation_ref(obs: Observation) -> Dict[str, Any]:
    return {
        "id": obs.id,
        "captured_at": format_timestamp(obs.captured_at),
        "ai_status": obs.ai_status,
        "source": obs.source,
    }


def _warn_parse(tq: TrackedQuery, profile: Dict[str, Any]) -> None:
    if profile["parse_warning_count"]:
        logger.warning(
            "%d pair(s) with unparseable payloads for tracked query %s",
            profile["parse_warning_count"], tq.id,
        )
