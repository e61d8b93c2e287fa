"""Shared service utilities: timestamps, metadata chunking, provider pacing."""
from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from license_billing.config import Settings

METADATA_VALUE_MAX_LEN = 500


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def from_timestamp(value: Any) -> datetime | None:
    """Convert a provider epoch-seconds value to an aware datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def chunk_metadata(prefix: str, values: list[str]) -> dict[str, str]:
    """Spread a comma-joined list across ``<prefix>_0..n`` metadata values.

    Provider metadata values are capped at 500 characters; values are never
    split mid-item.
    """
    chunks: list[str] = []
    current = ""
    for value in values:
        candidate = f"{current},{value}" if current else value
        if len(candidate) > METADATA_VALUE_MAX_LEN and current:
            chunks.append(current)
            current = value
        else:
            current = candidate
    if current:
        chunks.append(current)
    return {f"{prefix}_{i}": chunk for i, chunk in enumerate(chunks)}


def join_metadata_chunks(metadata: dict[str, Any], prefix: str) -> list[str]:
    """Reassemble a list written by ``chunk_metadata``, in chunk order."""
    values: list[str] = []
    index = 0
    while f"{prefix}_{index}" in metadata:
        values.extend(v for v in str(metadata[f"{prefix}_{index}"]).split(",") if v)
        index += 1
    if not values and metadata.get(prefix):
        values = [v for v in str(metadata[prefix]).split(",") if v]
    return values


def pace(config: Settings) -> None:
    """Sleep between sequential provider calls to stay under the rate limit."""
    if config.stripe_call_delay_ms > 0:
        time.sleep(config.stripe_call_delay_ms / 1000.0)
