"""Utility helpers shared across modules."""

from __future__ import annotations

import re
from datetime import UTC, datetime

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")


def parse_graph_datetime(value: str) -> datetime:
    """Convert Graph ISO strings (with trailing Z) into aware UTC datetimes."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_utc(dt: datetime) -> str:
    """Return an ISO string that Graph and the store document accept."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def extract_email_address(header_value: str | None) -> str:
    """Pull the bare address out of a header like ``Name <a@b.com>``."""
    if not header_value:
        return ""
    match = _ANGLE_ADDRESS.search(header_value)
    if match:
        return match.group(1).strip()
    return header_value.strip() if "@" in header_value else ""


def same_address(header_value: str | None, address: str | None) -> bool:
    """Case-insensitive comparison of a header's address with a bare address."""
    if not address:
        return False
    return extract_email_address(header_value).lower() == address.strip().lower()
