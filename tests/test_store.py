"""Tests for the fixture-backed store and the Supabase store (mocked)."""

import json
from unittest.mock import MagicMock, patch

import pytest

from serp_volatility.config import Settings
from serp_volatility.schema import RowError
from serp_volatility.store import InMemoryStore, SupabaseStore, group_by_key

from conftest import TENANT_A, TENANT_B, days_ago

FIXTURE = {
    "tracked_queries": [
        {"id": "tq-1", "tenantId": TENANT_A, "query": "q", "locale": "en-US", "device": "desktop"},
        {"id": "tq-2", "tenant_id": TENANT_B, "query": "q", "locale": "en-US", "device": "desktop"},
    ],
    "observations": [
        {"id": "o2", "tenant_id": TENANT_A, "query": "q", "locale": "en-US", "device": "desktop",
         "captured_at": "2026-02-28T00:00:00Z", "raw_payload": {"results": []}},
        {"id": "o1", "tenant_id": TENANT_A, "query": "q", "locale": "en-US", "device": "desktop",
         "capturedAt": "2026-02-27T00:00:00Z", "rawPayload": {"results": []}, "aiOverviewStatus": "present"},
        {"id": "o3", "tenant_id": TENANT_B, "query": "q", "locale": "en-US", "device": "desktop",
         "captured_at": "2026-02-27T00:00:00Z", "raw_payload": None},
    ],
}

KEY = ("q", "en-US", "desktop")


def observation_row(obs_id, captured_at):
    return {
        "id": obs_id, "tenant_id": TENANT_A, "query": "q", "locale": "en-US", "device": "desktop",
        "captured_at": captured_at, "raw_payload": {"results": []}, "ai_status": "absent",
    }


class TestInMemoryStore:

    @pytest.fixture
    def store(self):
        return InMemoryStore.from_rows(FIXTURE["tracked_queries"], FIXTURE["observations"])

    def test_tracked_query_is_tenant_scoped(self, store):
        assert store.get_tracked_query(TENANT_A, "tq-1").id == "tq-1"
        assert store.get_tracked_query(TENANT_A, "tq-2") is None
        assert [tq.id for tq in store.list_tracked_queries(TENANT_B)] == ["tq-2"]

    def test_observations_in_ledger_order(self, store):
        assert [o.id for o in store.list_observations(TENANT_A, KEY)] == ["o1", "o2"]

    def test_since_is_inclusive(self, store):
        since = store.get_observation(TENANT_A, "o2").captured_at
        assert [o.id for o in store.list_observations(TENANT_A, KEY, since)] == ["o2"]

    def test_observation_lookup_is_tenant_scoped(self, store):
        assert store.get_observation(TENANT_A, "o3") is None
        assert store.get_observation(TENANT_B, "o3").raw_payload is None

    def test_latest_observations_newest_first(self, store):
        latest = store.latest_observations(TENANT_A, KEY, limit=1)
        assert [o.id for o in latest] == ["o2"]
        before = latest[0].sort_key()
        assert [o.id for o in store.latest_observations(TENANT_A, KEY, 5, before=before)] == ["o1"]

    def test_load_json_fixture(self, tmp_path):
        path = tmp_path / "fixture.json"
        path.write_text(json.dumps(FIXTURE))
        store = InMemoryStore.load_fixture(path)
        assert len(store.list_tenant_observations(TENANT_A)) == 2

    def test_load_yaml_fixture(self, tmp_path):
        path = tmp_path / "fixture.yaml"
        path.write_text(
            "tracked_queries:\n"
            "  - {id: tq-1, tenant_id: tenant-a, query: q, locale: en-US, device: desktop}\n"
            "observations:\n"
            "  - id: o1\n"
            "    tenant_id: tenant-a\n"
            "    query: q\n"
            "    locale: en-US\n"
            "    device: desktop\n"
            "    captured_at: '2026-02-27T00:00:00Z'\n"
            "    raw_payload: {results: [{url: 'https://a.example', rank: 1}]}\n"
        )
        store = InMemoryStore.load_fixture(path)
        obs = store.get_observation(TENANT_A, "o1")
        assert obs.raw_payload["results"][0]["rank"] == 1

    def test_bad_row_raises(self):
        with pytest.raises(RowError):
            InMemoryStore.from_rows([], [{"id": "o1"}])

    def test_group_by_key(self, churn_observations):
        groups = group_by_key(churn_observations)
        assert list(groups) == [("running shoes", "en-US", "desktop")]
        assert len(groups[("running shoes", "en-US", "desktop")]) == 3


def mock_chain(pages):
    """A query-builder mock whose execute() returns each page in turn."""
    chain = MagicMock()
    for name in ("select", "eq", "gte", "order", "range", "limit", "or_"):
        getattr(chain, name).return_value = chain
    chain.execute.side_effect = [MagicMock(data=page) for page in pages]
    return chain


class TestSupabaseStore:

    @patch.object(SupabaseStore, "_table")
    def test_get_tracked_query_filters_by_tenant(self, mock_table):
        chain = mock_chain([[{"id": "tq-1", "tenant_id": TENANT_A, "query": "q",
                              "locale": "en-US", "device": "desktop"}]])
        mock_table.return_value = chain

        tq = SupabaseStore("https://x.supabase.co", "key").get_tracked_query(TENANT_A, "tq-1")

        mock_table.assert_called_once_with("tracked_queries")
        chain.eq.assert_any_call("tenant_id", TENANT_A)
        chain.eq.assert_any_call("id", "tq-1")
        assert tq.id == "tq-1"

    @patch.object(SupabaseStore, "_table")
    def test_missing_tracked_query(self, mock_table):
        mock_table.return_value = mock_chain([[]])
        assert SupabaseStore("u", "k").get_tracked_query(TENANT_A, "nope") is None

    @patch.object(SupabaseStore, "_table")
    def test_list_observations_orders_and_bounds(self, mock_table):
        chain = mock_chain([[observation_row("o1", "2026-02-27T00:00:00Z")]])
        mock_table.return_value = chain

        rows = SupabaseStore("u", "k").list_observations(TENANT_A, KEY, since=days_ago(5))

        chain.gte.assert_called_once_with("captured_at", "2026-02-24T00:00:00.000000Z")
        chain.order.assert_any_call("captured_at", desc=False)
        chain.order.assert_any_call("id", desc=False)
        chain.range.assert_called_once_with(0, 999)
        assert [o.id for o in rows] == ["o1"]

    @patch("serp_volatility.store.SUPABASE_PAGE_SIZE", 2)
    @patch.object(SupabaseStore, "_table")
    def test_pages_until_short_batch(self, mock_table):
        chain = mock_chain([
            [observation_row("o1", "2026-02-25T00:00:00Z"), observation_row("o2", "2026-02-26T00:00:00Z")],
            [observation_row("o3", "2026-02-27T00:00:00Z")],
        ])
        mock_table.return_value = chain

        rows = SupabaseStore("u", "k").list_tenant_observations(TENANT_A)

        assert [o.id for o in rows] == ["o1", "o2", "o3"]
        assert chain.execute.call_count == 2

    @patch.object(SupabaseStore, "_table")
    def test_latest_observations_with_cursor(self, mock_table):
        chain = mock_chain([[observation_row("o1", "2026-02-27T00:00:00Z")]])
        mock_table.return_value = chain

        SupabaseStore("u", "k").latest_observations(
            TENANT_A, KEY, limit=3, before=(days_ago(1), "o2")
        )

        chain.order.assert_any_call("captured_at", desc=True)
        chain.or_.assert_called_once_with(
            "captured_at.lt.2026-02-28T00:00:00.000000Z,"
            "and(captured_at.eq.2026-02-28T00:00:00.000000Z,id.lt.o2)"
        )
        chain.limit.assert_called_once_with(3)

    def test_client_created_lazily_in_schema(self):
        client = MagicMock()
        store = SupabaseStore("u", "k", schema="custom", client=client)
        store._table("observations")
        client.schema.assert_called_once_with("custom")
        client.schema.return_value.table.assert_called_once_with("observations")

    @patch("supabase.create_client")
    def test_create_client_on_first_use(self, mock_create):
        store = SupabaseStore("https://x.supabase.co", "key")
        mock_create.assert_not_called()
        store._table("observations")
        mock_create.assert_called_once_with("https://x.supabase.co", "key")

    def test_from_settings_requires_credentials(self):
        with pytest.raises(ValueError):
            SupabaseStore.from_settings(Settings())
        store = SupabaseStore.from_settings(Settings(supabase_url="u", supabase_key="k", supabase_schema="s"))
        assert store._schema == "s"
