"""Tests for row normalization and the camelCase / snake_case bridge."""

from datetime import datetime, timezone

import pytest

from serp_volatility.schema import (
    RowError,
    format_timestamp,
    format_timestamp_precise,
    normalize_ai_status,
    normalize_row,
    observation_from_row,
    parse_timestamp,
    tracked_query_from_row,
)


class TestNormalizeRow:
    """Alias spellings should map onto canonical field names."""

    def test_maps_camel_case_aliases(self):
        norm = normalize_row({"projectId": "t1", "capturedAt": "2026-01-01T00:00:00Z", "aiOverviewStatus": "present"})
        assert norm == {"tenant_id": "t1", "captured_at": "2026-01-01T00:00:00Z", "ai_status": "present"}

    def test_canonical_spelling_wins(self):
        norm = normalize_row({"tenant_id": "canonical", "projectId": "alias"})
        assert norm["tenant_id"] == "canonical"
        assert "projectId" not in norm

    def test_does_not_mutate_input(self):
        row = {"projectId": "t1"}
        normalize_row(row)
        assert row == {"projectId": "t1"}


class TestTimestamps:

    def test_parses_z_suffix_as_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

    def test_naive_is_treated_as_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00").tzinfo == timezone.utc

    def test_invalid_timestamp_raises_row_error(self):
        with pytest.raises(RowError):
            parse_timestamp("yesterday")

    def test_format_has_milliseconds_and_z(self):
        value = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2026-03-01T12:00:00.123Z"

    @pytest.mark.parametrize("raw,micros", [
        ("2026-03-01T12:00:00.12+00:00", 120000),
        ("2026-03-01T12:00:00.1Z", 100000),
        ("2026-03-01T12:00:00.12345+00:00", 123450),
        ("2026-03-01T12:00:00.1234567Z", 123456),
    ])
    def test_trimmed_fractions_parse(self, raw, micros):
        assert parse_timestamp(raw) == datetime(2026, 3, 1, 12, 0, 0, micros, tzinfo=timezone.utc)

    def test_precise_format_keeps_microseconds(self):
        value = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp_precise(value) == "2026-03-01T12:00:00.123456Z"
        assert parse_timestamp(format_timestamp_precise(value)) == value

    def test_format_none(self):
        assert format_timestamp(None) is None


class TestNormalizeAiStatus:

    @pytest.mark.parametrize("raw,expected", [
        ("present", "present"),
        ("SHOWN", "present"),
        (True, "present"),
        (False, "absent"),
        (None, "absent"),
        ("not_present", "absent"),
        ("parse-error", "parse_error"),
        ("garbled", "parse_error"),
    ])
    def test_maps_to_tri_state(self, raw, expected):
        assert normalize_ai_status(raw) == expected


class TestRowConversion:

    def test_observation_from_camel_case_row(self):
        obs = observation_from_row({
            "id": "o1",
            "projectId": "t1",
            "query": "q",
            "locale": "en-US",
            "device": "mobile",
            "capturedAt": "2026-03-01T00:00:00.000Z",
            "rawPayload": {"results": []},
            "aiOverviewStatus": "present",
        })
        assert obs.tenant_id == "t1"
        assert obs.ai_status == "present"
        assert obs.raw_payload == {"results": []}
        assert obs.source == "unknown"

    def test_observation_missing_captured_at(self):
        with pytest.raises(RowError, match="captured_at"):
            observation_from_row({"id": "o1", "tenant_id": "t", "query": "q", "locale": "l", "device": "d"})

    def test_tracked_query_defaults(self):
        tq = tracked_query_from_row({"id": "tq", "tenant_id": "t", "query": "q", "locale": "l", "device": "d"})
        assert tq.is_active is True
        assert tq.is_primary is False
        assert tq.key == ("q", "l", "d")
