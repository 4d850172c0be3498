"""Tests for SERP payload extraction (organic results and feature labels)."""

from serp_volatility.extraction import (
    TRANSITION_SEPARATOR,
    extract_feature_set,
    extract_organic_results,
    extract_result_set,
    top_ranked_urls,
)


def url_ranks(results):
    return [(r["url"], r["rank"]) for r in results]


class TestItemsShape:
    """Provider payloads with an "items" list."""

    def test_organic_items_use_rank_absolute_then_position(self):
        payload = {"items": [
            {"type": "organic", "url": "https://b.example", "rank_absolute": 2, "position": 9},
            {"type": "organic", "url": "https://a.example", "position": 1},
            {"type": "organic", "url": "https://c.example"},
        ]}
        result = extract_organic_results(payload)

        assert result["parse_warning"] is False
        assert url_ranks(result["results"]) == [
            ("https://a.example", 1),
            ("https://b.example", 2),
            ("https://c.example", None),
        ]

    def test_non_organic_types_become_features(self):
        payload = {"items": [
            {"type": "people_also_ask"},
            {"type": "featured_snippet"},
            {"type": "people_also_ask"},
            {"type": "organic", "url": "https://a.example", "rank_absolute": 1},
            {"type": ""},
        ]}
        assert extract_feature_set(payload) == ["featured_snippet", "people_also_ask"]

    def test_items_without_organic_results_warn(self):
        payload = {"items": [{"type": "local_pack"}]}
        result = extract_organic_results(payload)
        assert result["results"] == []
        assert result["parse_warning"] is True

    def test_empty_items_list_is_an_empty_serp(self):
        assert extract_organic_results({"items": []}) == {"results": [], "parse_warning": False}

    def test_items_without_string_url_are_skipped(self):
        payload = {"items": [
            {"type": "organic", "url": None, "rank_absolute": 1},
            {"type": "organic", "url": "https://a.example", "rank_absolute": 2},
        ]}
        urls = [r["url"] for r in extract_organic_results(payload)["results"]]
        assert urls == ["https://a.example"]


class TestSimpleShape:
    """Fixture payloads with "results" and "features" lists."""

    def test_rank_then_position(self):
        payload = {"results": [
            {"url": "https://a.example", "rank": 3},
            {"url": "https://b.example", "position": 1},
        ]}
        result = extract_organic_results(payload)
        assert [r["url"] for r in result["results"]] == ["https://b.example", "https://a.example"]
        assert result["parse_warning"] is False

    def test_boolean_rank_is_not_numeric(self):
        payload = {"results": [{"url": "https://a.example", "rank": True}]}
        assert url_ranks(extract_organic_results(payload)["results"]) == [("https://a.example", None)]

    def test_duplicate_urls_keep_lowest_rank(self):
        payload = {"results": [
            {"url": "https://a.example", "rank": 7},
            {"url": "https://a.example", "rank": 2},
        ]}
        assert url_ranks(extract_organic_results(payload)["results"]) == [("https://a.example", 2)]

    def test_null_ranks_sort_last_then_by_url(self):
        payload = {"results": [
            {"url": "https://z.example"},
            {"url": "https://y.example"},
            {"url": "https://x.example", "rank": 4},
        ]}
        urls = [r["url"] for r in extract_organic_results(payload)["results"]]
        assert urls == ["https://x.example", "https://y.example", "https://z.example"]

    def test_features_accept_strings_and_objects(self):
        payload = {"results": [], "features": ["video", {"type": "top_stories"}, {"name": "x"}, 3]}
        assert extract_feature_set(payload) == ["top_stories", "video"]

    def test_labels_with_transition_separator_are_dropped(self):
        payload = {"results": [], "features": [f"a{TRANSITION_SEPARATOR}b", "video"]}
        assert extract_feature_set(payload) == ["video"]


class TestMalformedPayloads:
    """Unrecognized payloads degrade to empty results plus a warning, never raise."""

    def test_non_object_payloads(self):
        for raw in (None, "html", 42, ["a", "b"]):
            result = extract_result_set(raw)
            assert result == {"results": [], "feature_set": [], "parse_warning": True}

    def test_unknown_keys(self):
        result = extract_result_set({"error": "quota exceeded"})
        assert result["parse_warning"] is True
        assert result["results"] == []


class TestTopRankedUrls:

    def test_skips_null_ranks(self):
        results = [
            {"url": "https://a.example", "rank": 1},
            {"url": "https://b.example", "rank": 2},
            {"url": "https://c.example", "rank": None},
        ]
        assert top_ranked_urls(results, 3) == {"https://a.example": 1, "https://b.example": 2}

    def test_takes_first_n(self):
        results = [{"url": f"https://{i}.example", "rank": i} for i in range(1, 6)]
        assert list(top_ranked_urls(results, 3)) == [
            "https://1.example", "https://2.example", "https://3.example",
        ]


class TestResultFields:

    def test_domain_and_title_carried_from_payload(self):
        payload = {"items": [{
            "type": "organic", "url": "https://www.a.example/page", "rank_absolute": 1,
            "domain": "a.example", "title": "A page",
        }]}
        assert extract_organic_results(payload)["results"] == [{
            "url": "https://www.a.example/page",
            "domain": "a.example",
            "rank": 1,
            "title": "A page",
        }]

    def test_domain_falls_back_to_hostname(self):
        payload = {"results": [{"url": "https://Shop.Example.com/x?q=1", "rank": 1, "title": 7}]}
        result = extract_organic_results(payload)["results"][0]
        assert result["domain"] == "shop.example.com"
        assert result["title"] is None

    def test_unparseable_url_has_no_domain(self):
        payload = {"results": [{"url": "not a url", "rank": 1}, {"url": "http://[::1", "rank": 2}]}
        assert [r["domain"] for r in extract_organic_results(payload)["results"]] == [None, None]
