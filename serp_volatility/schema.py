#!/usr/bin/env python3
"""Row normalization for stored observations and tracked queries.

Rows reach this package from two places: fixture files written by hand or by
the synthetic generator, and the Supabase tables. The ingestion side has used
camelCase column names (capturedAt, aiOverviewStatus, projectId) while this
package uses snake_case. This module bridges both spellings and turns rows
into the frozen records in serp_volatility.models.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from serp_volatility.models import (
    AI_STATUS_ABSENT,
    AI_STATUS_PARSE_ERROR,
    AI_STATUS_PRESENT,
    Observation,
    TrackedQuery,
)

# Alternate spelling -> canonical field name.
FIELD_ALIASES = {
    "projectId": "tenant_id",
    "project_id": "tenant_id",
    "tenantId": "tenant_id",
    "capturedAt": "captured_at",
    "validAt": "valid_at",
    "rawPayload": "raw_payload",
    "aiOverviewStatus": "ai_status",
    "ai_overview_status": "ai_status",
    "aiOverviewText": "ai_text",
    "ai_overview_text": "ai_text",
    "isPrimary": "is_primary",
    "isActive": "is_active",
    "createdAt": "created_at",
}

# Provider / legacy status strings -> tri-state.
AI_STATUS_ALIASES = {
    "present": AI_STATUS_PRESENT,
    "shown": AI_STATUS_PRESENT,
    "true": AI_STATUS_PRESENT,
    "absent": AI_STATUS_ABSENT,
    "not_present": AI_STATUS_ABSENT,
    "none": AI_STATUS_ABSENT,
    "false": AI_STATUS_ABSENT,
    "parse_error": AI_STATUS_PARSE_ERROR,
    "parse-error": AI_STATUS_PARSE_ERROR,
    "error": AI_STATUS_PARSE_ERROR,
}


class RowError(ValueError):
    """A stored row is missing a required field or has an unusable value."""


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of row with canonical field names.

    When both spellings are present the canonical one wins.
    """
    normalized = dict(row)
    for alias, canonical in FIELD_ALIASES.items():
        if alias in normalized:
            value = normalized.pop(alias)
            normalized.setdefault(canonical, value)
    return normalized


# Seconds fraction of any length. Python < 3.11 only accepts 3 or 6 digits,
# and PostgREST trims trailing zeros.
_FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def _pad_fraction(match: "re.Match[str]") -> str:
    return f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string (trailing Z allowed) into an aware UTC datetime.

    Naive values are taken to be UTC. None stays None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = _FRACTION_RE.sub(_pad_fraction, value.strip().replace("Z", "+00:00"), count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise RowError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise RowError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 with millisecond precision and a Z suffix, matching the ledger."""
    if value is None:
        return None
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def format_timestamp_precise(value: datetime) -> str:
    """Microsecond precision with a Z suffix, for cursors and keyset filters."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def normalize_ai_status(value: Any) -> str:
    """Map any stored AI panel status onto present / absent / parse_error.

    Unrecognized values count as parse_error: we could not tell what the
    panel looked like.
    """
    if isinstance(value, bool):
        return AI_STATUS_PRESENT if value else AI_STATUS_ABSENT
    if value is None:
        return AI_STATUS_ABSENT
    return AI_STATUS_ALIASES.get(str(value).strip().lower(), AI_STATUS_PARSE_ERROR)


def _require(row: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if row.get(f) in (None, "")]
    if missing:
        raise RowError(f"Row missing required fields: {', '.join(missing)}")


def observation_from_row(row: Dict[str, Any]) -> Observation:
    """Build an Observation from a stored row (either spelling)."""
    norm = normalize_row(row)
    _require(norm, "id", "tenant_id", "query", "locale", "device", "captured_at")
    return Observation(
        id=str(norm["id"]),
        tenant_id=str(norm["tenant_id"]),
        query=norm["query"],
        locale=norm["locale"],
        device=norm["device"],
        captured_at=parse_timestamp(norm["captured_at"]),
        valid_at=parse_timestamp(norm.get("valid_at")),
        raw_payload=norm.get("raw_payload"),
        ai_status=normalize_ai_status(norm.get("ai_status")),
        ai_text=norm.get("ai_text"),
        source=norm.get("source") or "unknown",
    )


def tracked_query_from_row(row: Dict[str, Any]) -> TrackedQuery:
    """Build a TrackedQuery from a stored row (either spelling)."""
    norm = normalize_row(row)
    _require(norm, "id", "tenant_id", "query", "locale", "device")
    return TrackedQuery(
        id=str(norm["id"]),
        tenant_id=str(norm["tenant_id"]),
        query=norm["query"],
        locale=norm["locale"],
        device=norm["device"],
        is_primary=bool(norm.get("is_primary", False)),
        is_active=bool(norm.get("is_active", True)),
        created_at=parse_timestamp(norm.get("created_at")),
    )
