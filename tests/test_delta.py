"""Tests for the pairwise delta engine and the moved / entered / exited view."""

import pytest

from serp_volatility.delta import compare_results, compute_delta, consecutive_deltas, sort_observations

from conftest import days_ago, make_obs


class TestComputeDelta:

    def test_rank_shifts_only_for_urls_ranked_on_both_sides(self):
        a = make_obs("a", days_ago(2), {"https://x.example": 1, "https://y.example": 4})
        b = make_obs("b", days_ago(1), {"https://x.example": 3, "https://z.example": 2})
        delta = compute_delta(a, b)

        assert delta.rank_shifts == {"https://x.example": 2}
        assert delta.url_ranks == {
            "https://x.example": (1, 3),
            "https://y.example": (4, None),
            "https://z.example": (None, 2),
        }
        assert delta.average_shift == 2
        assert delta.max_shift == 2

    def test_null_rank_urls_are_not_recorded(self):
        a = make_obs("a", days_ago(2), raw_payload={"results": [{"url": "https://n.example"}]})
        b = make_obs("b", days_ago(1), raw_payload={"results": [{"url": "https://n.example"}]})
        assert compute_delta(a, b).url_ranks == {}

    def test_feature_churn_is_symmetric_difference(self):
        a = make_obs("a", days_ago(2), features=["video", "local_pack"])
        b = make_obs("b", days_ago(1), features=["video", "top_stories"])
        delta = compute_delta(a, b)
        assert delta.feature_churn == 2
        assert delta.from_features == ("local_pack", "video")

    def test_parse_error_is_its_own_ai_state(self):
        a = make_obs("a", days_ago(2), ai_status="absent")
        b = make_obs("b", days_ago(1), ai_status="parse_error")
        assert compute_delta(a, b).ai_flipped is True

    def test_parse_warning_from_either_side(self):
        a = make_obs("a", days_ago(2), {"https://x.example": 1})
        b = make_obs("b", days_ago(1), raw_payload="not json")
        assert compute_delta(a, b).parse_warning is True

    def test_out_of_order_raises(self):
        a = make_obs("a", days_ago(1))
        b = make_obs("b", days_ago(2))
        with pytest.raises(ValueError, match="out of order"):
            compute_delta(a, b)

    def test_different_keys_raise(self):
        a = make_obs("a", days_ago(2), query="one")
        b = make_obs("b", days_ago(1), query="two")
        with pytest.raises(ValueError):
            compute_delta(a, b)

    def test_same_timestamp_is_allowed(self):
        a = make_obs("a", days_ago(1))
        b = make_obs("b", days_ago(1))
        assert compute_delta(a, b).feature_churn == 0


class TestConsecutiveDeltas:

    def test_n_minus_one_deltas(self, churn_observations):
        assert len(consecutive_deltas(churn_observations)) == 2
        assert consecutive_deltas(churn_observations[:1]) == []
        assert consecutive_deltas([]) == []

    def test_sort_observations_breaks_ties_by_id(self):
        t = days_ago(1)
        ordered = sort_observations([make_obs("b", t), make_obs("a", t), make_obs("0", days_ago(2))])
        assert [o.id for o in ordered] == ["0", "a", "b"]


class TestCompareResults:

    def test_moved_entered_exited(self):
        a = make_obs("a", days_ago(2), {"https://x.example": 5, "https://y.example": 1, "https://gone.example": 3})
        b = make_obs("b", days_ago(1), {"https://x.example": 2, "https://y.example": 4, "https://new.example": 1},
                     ai_status="present")
        result = compare_results(a, b)

        assert [m["url"] for m in result["moved"]] == ["https://x.example", "https://y.example"]
        assert result["moved"][0]["rank_delta"] == 3
        assert result["moved"][1]["rank_delta"] == -3
        assert result["entered"] == [{"url": "https://new.example", "rank": 1}]
        assert result["exited"] == [{"url": "https://gone.example", "rank": 3}]
        assert result["ai_overview"] == {"changed": True, "from": "absent", "to": "present"}
        assert result["summary"]["improved_count"] == 1
        assert result["summary"]["declined_count"] == 1
        assert result["summary"]["unchanged_count"] == 0
        assert result["same_timestamp"] is False

    def test_null_rank_moved_sorts_last(self):
        a = make_obs("a", days_ago(2), raw_payload={"results": [
            {"url": "https://n.example"}, {"url": "https://x.example", "rank": 1},
        ]})
        b = make_obs("b", days_ago(1), raw_payload={"results": [
            {"url": "https://n.example", "rank": 2}, {"url": "https://x.example", "rank": 1},
        ]})
        moved = compare_results(a, b)["moved"]
        assert [m["url"] for m in moved] == ["https://x.example", "https://n.example"]
        assert moved[1]["rank_delta"] is None
