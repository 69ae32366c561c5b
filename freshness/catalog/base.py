"""Catalog reader contract, errors, and helpers."""

from __future__ import annotations

import time
from typing import Iterator, Optional, Protocol, Union

from freshness.models.domain import FeedCandidate, MalformedCandidate

DEFAULT_STALENESS_DAYS = 90
SECONDS_PER_DAY = 86_400

CatalogItem = Union[FeedCandidate, MalformedCandidate]


class CatalogError(Exception):
    """Base catalog error; always fatal to a pipeline run."""


class CatalogUnavailable(CatalogError):
    """The catalog store cannot be opened or connected."""


class CatalogQueryError(CatalogError):
    """The candidate query failed while executing or scanning."""


class CatalogReader(Protocol):
    def list_recent_candidates(self, cutoff_epoch_seconds: int, limit: int) -> Iterator[CatalogItem]:
        ...


def compute_cutoff(now: Optional[float] = None, staleness_days: int = DEFAULT_STALENESS_DAYS) -> int:
    """Return the epoch-seconds cutoff: ``now`` minus the staleness window."""
    if staleness_days < 0:
        raise ValueError("staleness_days must be >= 0")
    current = time.time() if now is None else now
    return int(current) - SECONDS_PER_DAY * staleness_days


def validate_limit(limit: Optional[int]) -> int:
    if limit is None:
        raise ValueError("limit is required")
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValueError(f"limit must be an int, got {type(limit).__name__}")
    if limit < 1:
        raise ValueError("limit must be >= 1")
    return limit
