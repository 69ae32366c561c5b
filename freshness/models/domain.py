"""Domain models for the freshness-check pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import format_datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class FeedCandidate(BaseModel):
    """One catalog row selected for probing."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0, description="Catalog identifier")
    endpoint_url: str = Field(..., min_length=1, description="Feed URL, not validated locally")
    title: str = Field("", description="Display title, informational only")


class MalformedCandidate(BaseModel):
    """A catalog row that could not be decoded into a FeedCandidate."""

    model_config = ConfigDict(frozen=True)

    candidate_id: Optional[int] = None
    reason: str


def _quote_etag(etag: str) -> str:
    if etag.startswith('"') or etag.startswith('W/"'):
        return etag
    return f'"{etag}"'


class CacheValidators(BaseModel):
    """Validators remembered from a previous probe of the same feed.

    ``last_modified`` is usually the raw ``Last-Modified`` header value and is
    sent back untouched; a datetime is rendered as an HTTP date.
    """

    model_config = ConfigDict(frozen=True)

    etag: Optional[str] = None
    last_modified: Optional[Union[datetime, str]] = None

    @property
    def is_empty(self) -> bool:
        return not self.etag and not self.last_modified

    def to_request_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.etag:
            headers["If-None-Match"] = _quote_etag(self.etag.strip())
        if isinstance(self.last_modified, datetime):
            value = self.last_modified
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            headers["If-Modified-Since"] = format_datetime(value.astimezone(timezone.utc), usegmt=True)
        elif self.last_modified:
            headers["If-Modified-Since"] = self.last_modified.strip()
        return headers

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, str]]) -> Optional["CacheValidators"]:
        """Build next-cycle validators from observed response headers."""
        if not headers:
            return None
        lowered = {str(k).lower(): v for k, v in headers.items()}
        etag = lowered.get("etag") or None
        last_modified = lowered.get("last-modified") or None
        if etag is None and last_modified is None:
            return None
        return cls(etag=etag, last_modified=last_modified)


class ProbeStatus(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    UNREACHABLE = "unreachable"
    PROTOCOL_ERROR = "protocol_error"


FAILURE_STATUSES = frozenset({ProbeStatus.UNREACHABLE, ProbeStatus.PROTOCOL_ERROR})


class FreshnessOutcome(BaseModel):
    """Classification of a single probe."""

    model_config = ConfigDict(frozen=True)

    candidate_id: Optional[int] = None
    status: ProbeStatus
    http_status_code: Optional[int] = None
    observed_headers: Optional[Dict[str, str]] = None
    final_url: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = Field(1, ge=1)

    @property
    def is_failure(self) -> bool:
        return self.status in FAILURE_STATUSES


class CandidateFailure(BaseModel):
    """Failure entry reported in a RunSummary."""

    model_config = ConfigDict(frozen=True)

    candidate_id: Optional[int]
    status: ProbeStatus
    http_status_code: Optional[int] = None
    reason: Optional[str] = None


def _zero_counts() -> Dict[ProbeStatus, int]:
    return {status: 0 for status in ProbeStatus}


class RunSummary(BaseModel):
    """Aggregated result of one pipeline run.

    ``partial`` is set when the run was cancelled before the candidate
    stream was exhausted; counts then cover only the probed candidates.
    """

    counts: Dict[ProbeStatus, int] = Field(default_factory=_zero_counts)
    failures: List[CandidateFailure] = Field(default_factory=list)
    changed: List[FreshnessOutcome] = Field(default_factory=list)
    candidates_pulled: int = 0
    partial: bool = False
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def total_outcomes(self) -> int:
        return sum(self.counts.values())

    def record(self, outcome: FreshnessOutcome) -> None:
        self.counts[outcome.status] = self.counts.get(outcome.status, 0) + 1
        if outcome.status is ProbeStatus.CHANGED:
            self.changed.append(outcome)
        elif outcome.is_failure:
            self.failures.append(
                CandidateFailure(
                    candidate_id=outcome.candidate_id,
                    status=outcome.status,
                    http_status_code=outcome.http_status_code,
                    reason=outcome.reason,
                )
            )

    def as_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["counts"] = {status.value: self.counts.get(status, 0) for status in ProbeStatus}
        data["total_outcomes"] = self.total_outcomes
        return data
