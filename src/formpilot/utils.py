from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from urllib.parse import urldefrag, urljoin, urlsplit

TRUNCATION_MARKER = "\n... [truncated]"


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat(timespec="microseconds")


def iso_after(seconds: float, now: datetime | None = None) -> str:
    base = now or utc_now()
    return (base + timedelta(seconds=seconds)).isoformat(timespec="microseconds")


def new_id() -> str:
    return uuid.uuid4().hex


def truncate_text(text: str | None, limit: int) -> str | None:
    if text is None or len(text) <= limit:
        return text
    keep = max(limit - len(TRUNCATION_MARKER), 0)
    return text[:keep] + TRUNCATION_MARKER


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def is_http_url(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


def resolve_url(base_url: str, candidate: str) -> str:
    resolved, _fragment = urldefrag(urljoin(base_url, candidate.strip()))
    return resolved
