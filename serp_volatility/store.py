"""Read-only stores for tracked queries and observations.

Two implementations share one interface:

- InMemoryStore: loaded from a JSON or YAML fixture file with top-level
  "tracked_queries" and "observations" lists. Used by tests, the CLI and
  the synthetic scenario validator.
- SupabaseStore: reads the tracked_queries and observations tables in the
  configured schema through supabase-py.

Every read is scoped by tenant. Nothing here writes.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from serp_volatility.models import Observation, TrackedQuery
from serp_volatility.schema import (
    format_timestamp_precise,
    observation_from_row,
    tracked_query_from_row,
)

logger = logging.getLogger(__name__)

Key = Tuple[str, str, str]
# (captured_at, id) of the last item on the previous page, newest-first order
HistoryCursor = Tuple[datetime, str]

SUPABASE_PAGE_SIZE = 1000


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class TrackedQueryStore(ABC):

    @abstractmethod
    def get_tracked_query(self, tenant_id: str, tracked_query_id: str) -> Optional[TrackedQuery]:
        """The tracked query, or None when missing OR owned by another tenant."""

    @abstractmethod
    def list_tracked_queries(self, tenant_id: str) -> List[TrackedQuery]:
        """All tracked queries of a tenant, ordered query ASC, id ASC."""


class ObservationStore(ABC):

    @abstractmethod
    def get_observation(self, tenant_id: str, observation_id: str) -> Optional[Observation]:
        """Point lookup, scoped by tenant."""

    @abstractmethod
    def list_observations(
        self,
        tenant_id: str,
        key: Key,
        since: Optional[datetime] = None,
    ) -> List[Observation]:
        """Observations of one key with captured_at >= since, ledger order."""

    @abstractmethod
    def list_tenant_observations(
        self,
        tenant_id: str,
        since: Optional[datetime] = None,
    ) -> List[Observation]:
        """Every observation of a tenant with captured_at >= since, ledger order."""

    @abstractmethod
    def latest_observations(
        self,
        tenant_id: str,
        key: Key,
        limit: int,
        since: Optional[datetime] = None,
        before: Optional[HistoryCursor] = None,
    ) -> List[Observation]:
        """Newest-first page: captured_at DESC, id DESC, strictly before `before`."""


def group_by_key(observations: Iterable[Observation]) -> Dict[Key, List[Observation]]:
    """Bucket observations by (query, locale, device), preserving order."""
    groups: Dict[Key, List[Observation]] = {}
    for obs in observations:
        groups.setdefault(obs.key, []).append(obs)
    return groups


# ---------------------------------------------------------------------------
# In-memory / fixture store
# ---------------------------------------------------------------------------

class InMemoryStore(TrackedQueryStore, ObservationStore):
    """Both stores over plain lists. Rows are normalized on the way in."""

    def __init__(
        self,
        tracked_queries: Iterable[TrackedQuery] = (),
        observations: Iterable[Observation] = (),
    ):
        self._tracked = {tq.id: tq for tq in tracked_queries}
        self._observations = sorted(observations, key=lambda o: o.sort_key())
        self._by_id = {o.id: o for o in self._observations}

    @classmethod
    def from_rows(
        cls,
        tracked_rows: Iterable[Dict[str, Any]],
        observation_rows: Iterable[Dict[str, Any]],
    ) -> "InMemoryStore":
        return cls(
            tracked_queries=[tracked_query_from_row(r) for r in tracked_rows],
            observations=[observation_from_row(r) for r in observation_rows],
        )

    @classmethod
    def load_fixture(cls, path: Union[str, Path]) -> "InMemoryStore":
        """Load a fixture file. .json is read with json, anything else as YAML."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                import yaml

                data = yaml.safe_load(f)

        data = data or {}
        store = cls.from_rows(
            data.get("tracked_queries", []),
            data.get("observations", []),
        )
        logger.info(
            "Loaded fixture %s: %d tracked queries, %d observations",
            path, len(store._tracked), len(store._observations),
        )
        return store

    def get_tracked_query(self, tenant_id, tracked_query_id):
        tq = self._tracked.get(tracked_query_id)
        if tq is None or tq.tenant_id != tenant_id:
            return None
        return tq

    def list_tracked_queries(self, tenant_id):
        return sorted(
            (tq for tq in self._tracked.values() if tq.tenant_id == tenant_id),
            key=lambda tq: (tq.query, tq.id),
        )

    def get_observation(self, tenant_id, observation_id):
        obs = self._by_id.get(observation_id)
        if obs is None or obs.tenant_id != tenant_id:
            return None
        return obs

    def list_observations(self, tenant_id, key, since=None):
        return [
            o for o in self._observations
            if o.tenant_id == tenant_id
            and o.key == tuple(key)
            and (since is None or o.captured_at >= since)
        ]

    def list_tenant_observations(self, tenant_id, since=None):
        return [
            o for o in self._observations
            if o.tenant_id == tenant_id
            and (since is None or o.captured_at >= since)
        ]

    def latest_observations(self, tenant_id, key, limit, since=None, before=None):
        newest_first = reversed(self.list_observations(tenant_id, key, since))
        if before is not None:
            newest_first = (o for o in newest_first if o.sort_key() < before)
        page = []
        for obs in newest_first:
            if len(page) >= limit:
                break
            page.append(obs)
        return page


# ---------------------------------------------------------------------------
# Supabase store
# ---------------------------------------------------------------------------

class SupabaseStore(TrackedQueryStore, ObservationStore):
    """Reads the tracked_queries and observations tables in one schema.

    The client is created on first use so constructing the store never
    touches the network.
    """

    TRACKED_QUERIES = "tracked_queries"
    OBSERVATIONS = "observations"

    def __init__(self, url: str, key: str, schema: str = "serp_volatility", client: Any = None):
        self._url = url
        self._key = key
        self._schema = schema
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseStore":
        if not settings.supabase_configured:
            raise ValueError(
                "SERP_VOLATILITY_SUPABASE_URL and SERP_VOLATILITY_SUPABASE_KEY must be set"
            )
        return cls(settings.supabase_url, settings.supabase_key, settings.supabase_schema)

    def _get_client(self):
        if self._client is None:
            from supabase import create_client

            self._client = create_client(self._url, self._key)
        return self._client

    def _table(self, name: str):
        """Table reference inside the configured schema."""
        return self._get_client().schema(self._schema).table(name)

    def _fetch_all(self, build_query) -> List[Dict[str, Any]]:
        """Run a query in pages of SUPABASE_PAGE_SIZE rows until exhausted."""
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            resp = build_query().range(start, start + SUPABASE_PAGE_SIZE - 1).execute()
            batch = resp.data or []
            rows.extend(batch)
            if len(batch) < SUPABASE_PAGE_SIZE:
                return rows
            start += SUPABASE_PAGE_SIZE

    def get_tracked_query(self, tenant_id, tracked_query_id):
        resp = (
            self._table(self.TRACKED_QUERIES)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("id", tracked_query_id)
            .limit(1)
            .execute()
        )
        if not resp.data:
            return None
        return tracked_query_from_row(resp.data[0])

    def list_tracked_queries(self, tenant_id):
        rows = self._fetch_all(
            lambda: self._table(self.TRACKED_QUERIES)
            .select("*")
            .eq("tenant_id", tenant_id)
            .order("query")
            .order("id")
        )
        return [tracked_query_from_row(r) for r in rows]

    def get_observation(self, tenant_id, observation_id):
        resp = (
            self._table(self.OBSERVATIONS)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("id", observation_id)
            .limit(1)
            .execute()
        )
        if not resp.data:
            return None
        return observation_from_row(resp.data[0])

    def _observation_query(self, tenant_id, key=None, since=None, descending=False):
        query = self._table(self.OBSERVATIONS).select("*").eq("tenant_id", tenant_id)
        if key is not None:
            text, locale, device = key
            query = query.eq("query", text).eq("locale", locale).eq("device", device)
        if since is not None:
            query = query.gte("captured_at", format_timestamp_precise(since))
        return query.order("captured_at", desc=descending).order("id", desc=descending)

    def list_observations(self, tenant_id, key, since=None):
        rows = self._fetch_all(lambda: self._observation_query(tenant_id, key, since))
        return [observation_from_row(r) for r in rows]

    def list_tenant_observations(self, tenant_id, since=None):
        rows = self._fetch_all(lambda: self._observation_query(tenant_id, None, since))
        return [observation_from_row(r) for r in rows]

    def latest_observations(self, tenant_id, key, limit, since=None, before=None):
        query = self._observation_query(tenant_id, key, since, descending=True)
        if before is not None:
            ts = format_timestamp_precise(before[0])
            query = query.or_(
                f"captured_at.lt.{ts},and(captured_at.eq.{ts},id.lt.{before[1]})"
            )
        resp = query.limit(limit).execute()
        return [observation_from_row(r) for r in resp.data or []]
