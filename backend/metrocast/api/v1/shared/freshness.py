"""Conditional-request helpers for the polling endpoints.

Stop-scoped reads carry a ``Last-Modified`` marker and honour
``If-Modified-Since``. Some proxies in front of the API strip that header, so
``X-If-Modified-Since`` is accepted as a fallback. Vehicle positions use an
``ETag`` derived from the snapshot's update time instead.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime

from fastapi import Request, Response, status

from metrocast.core.metrics import record_conditional_response

IF_MODIFIED_SINCE = "If-Modified-Since"
X_IF_MODIFIED_SINCE = "X-If-Modified-Since"
IF_NONE_MATCH = "If-None-Match"


def format_http_date(value: datetime) -> str:
    """Format an instant as an RFC 7231 HTTP date."""
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: str | None) -> datetime | None:
    """Parse an HTTP date header, returning None for missing or invalid values."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_if_modified_since(request: Request) -> datetime | None:
    """Return the client's freshness marker, preferring the standard header."""
    return parse_http_date(
        request.headers.get(IF_MODIFIED_SINCE)
        or request.headers.get(X_IF_MODIFIED_SINCE)
    )


def is_not_modified(marker: datetime | None, since: datetime | None) -> bool:
    """True when the stored marker is no newer than the client's copy.

    HTTP dates have one-second resolution, so markers are compared at that
    granularity. Without a marker the data is always treated as changed.
    """
    if marker is None or since is None:
        return False
    return int(marker.timestamp()) <= int(since.timestamp())


def etag_for(value: str) -> str:
    """Strong ETag for an opaque version string."""
    return '"' + hashlib.md5(value.encode("utf-8")).hexdigest() + '"'


def etag_matches(request: Request, etag: str) -> bool:
    header = request.headers.get(IF_NONE_MATCH)
    if not header:
        return False
    candidates = [candidate.strip() for candidate in header.split(",")]
    if "*" in candidates:
        return True
    return any(candidate.removeprefix("W/") == etag for candidate in candidates)


def not_modified_response(endpoint: str, headers: dict[str, str]) -> Response:
    """Empty 304 response carrying the validators of the current representation."""
    record_conditional_response(endpoint, "not_modified")
    return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
