"""Freshness-check pipeline.

The calling thread is the single producer: it pulls candidates from the
catalog stream one at a time and hands each to a bounded pool of probe
workers. Outcomes are aggregated in the producer thread as workers finish,
in no particular order.

Failure handling is asymmetric:

- catalog errors (CatalogUnavailable / CatalogQueryError) abort the run and
  propagate unchanged; in-flight probes are abandoned
- per-candidate failures (unreachable / protocol_error) are counted and
  listed in the RunSummary, and the run moves on

Every pulled candidate yields exactly one outcome, including malformed
catalog rows and probes that raise.
"""

from __future__ import annotations

import random
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat

from freshness.catalog.base import (
    DEFAULT_STALENESS_DAYS,
    CatalogError,
    CatalogItem,
    CatalogReader,
    compute_cutoff,
)
from freshness.models.domain import (
    CacheValidators,
    FeedCandidate,
    FreshnessOutcome,
    MalformedCandidate,
    ProbeStatus,
    RunSummary,
)
from freshness.settings import MAX_PROBE_WORKERS, Settings
from freshness.utils.logging import get_logger

logger = get_logger(__name__)

ValidatorsLookup = Callable[[FeedCandidate], Optional[CacheValidators]]
OutcomeHook = Callable[[CatalogItem, FreshnessOutcome], None]

PROBE_DEADLINE_GRACE_SECONDS = 1.0
_END = object()


class Prober(Protocol):
    def probe(
        self,
        endpoint_url: str,
        prior_validators: Optional[CacheValidators] = None,
        timeout: Optional[float] = None,
        *,
        candidate_id: Optional[int] = None,
    ) -> FreshnessOutcome:
        ...


class RunConfig(BaseModel):
    """Per-run knobs. ``limit`` has no default: a run without one is a caller error."""

    model_config = ConfigDict(frozen=True)

    limit: Optional[int] = None
    staleness_days: int = Field(DEFAULT_STALENESS_DAYS, ge=0)
    probe_timeout_seconds: PositiveFloat = 10.0
    workers: int = Field(8, ge=1, le=MAX_PROBE_WORKERS)
    retry_max_attempts: int = Field(1, ge=1)
    retry_backoff_seconds: float = Field(1.0, ge=0)
    retry_on_status: FrozenSet[int] = frozenset({429, 502, 503, 504})

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "RunConfig":  # noqa: ANN003
        values = {
            "limit": settings.candidate_limit,
            "staleness_days": settings.staleness_window_days,
            "probe_timeout_seconds": settings.probe_timeout_seconds,
            "workers": settings.probe_workers,
            "retry_max_attempts": settings.probe_retry_max_attempts,
            "retry_backoff_seconds": settings.probe_retry_backoff_seconds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def should_retry(outcome: FreshnessOutcome, config: RunConfig) -> bool:
    """Only transient unreachability is retried; protocol errors never are."""
    if outcome.status is not ProbeStatus.UNREACHABLE:
        return False
    return outcome.http_status_code is None or outcome.http_status_code in config.retry_on_status


def backoff_delay(attempt: int, base_seconds: float) -> float:
    # Full jitter over an exponential ceiling
    return random.uniform(0, base_seconds * (2 ** (attempt - 1)))


def probe_candidate(
    prober: Prober,
    candidate: FeedCandidate,
    validators: Optional[CacheValidators],
    config: RunConfig,
    cancel_event: Optional[threading.Event] = None,
) -> FreshnessOutcome:
    """Probe one candidate, retrying transient failures per ``config``."""
    attempt = 0
    while True:
        attempt += 1
        try:
            outcome = prober.probe(
                candidate.endpoint_url,
                validators,
                config.probe_timeout_seconds,
                candidate_id=candidate.id,
            )
        except Exception as exc:
            logger.exception(
                "probe.crashed",
                extra={"candidate_id": candidate.id, "url": candidate.endpoint_url},
            )
            return FreshnessOutcome(
                candidate_id=candidate.id,
                status=ProbeStatus.PROTOCOL_ERROR,
                reason=f"prober raised {exc.__class__.__name__}: {exc}",
                attempts=attempt,
            )

        if attempt >= config.retry_max_attempts or not should_retry(outcome, config):
            return outcome.model_copy(update={"attempts": attempt})

        delay = backoff_delay(attempt, config.retry_backoff_seconds)
        logger.info(
            "probe.retry",
            extra={
                "candidate_id": candidate.id,
                "attempt": attempt,
                "delay_seconds": round(delay, 3),
                "http_status_code": outcome.http_status_code,
            },
        )
        if cancel_event is None:
            time.sleep(delay)
        elif cancel_event.wait(delay):
            return outcome.model_copy(update={"attempts": attempt})


def probe_budget_seconds(config: RunConfig) -> float:
    """Wall-clock budget for one candidate, every attempt and back-off included.

    httpx timeouts bound each connect/read phase, not the whole exchange, so a
    host trickling bytes can outlive ``probe_timeout_seconds``; the run stops
    waiting for such a probe once this budget is spent.
    """
    attempts = config.retry_max_attempts
    backoff = config.retry_backoff_seconds * (2 ** (attempts - 1) - 1)
    return config.probe_timeout_seconds * attempts + backoff + PROBE_DEADLINE_GRACE_SECONDS


class _ProbeJob:
    __slots__ = ("item", "started_at")

    def __init__(self, item: FeedCandidate) -> None:
        self.item = item
        self.started_at: Optional[float] = None


def _run_job(
    job: _ProbeJob,
    prober: Prober,
    validators: Optional[CacheValidators],
    config: RunConfig,
    cancel_event: Optional[threading.Event],
) -> FreshnessOutcome:
    job.started_at = time.monotonic()
    return probe_candidate(prober, job.item, validators, config, cancel_event)


def _wait_timeout(jobs: Iterable[_ProbeJob], budget: float) -> float:
    now = time.monotonic()
    # Queued jobs have no deadline yet; look again within one budget.
    remaining = [budget if job.started_at is None else job.started_at + budget - now for job in jobs]
    return max(0.0, min(remaining))


def _record(
    summary: RunSummary,
    item: CatalogItem,
    outcome: FreshnessOutcome,
    on_outcome: Optional[OutcomeHook],
) -> None:
    summary.record(outcome)
    if outcome.is_failure:
        logger.info(
            "probe.failure",
            extra={
                "candidate_id": outcome.candidate_id,
                "status": outcome.status.value,
                "http_status_code": outcome.http_status_code,
                "reason": outcome.reason,
            },
        )
    else:
        logger.debug(
            "probe.outcome",
            extra={
                "candidate_id": outcome.candidate_id,
                "status": outcome.status.value,
                "http_status_code": outcome.http_status_code,
            },
        )
    if on_outcome is not None:
        on_outcome(item, outcome)


def _pull(stream: Iterator[CatalogItem]) -> object:
    try:
        return next(stream)
    except StopIteration:
        return _END


def _close_stream(stream: Iterator[CatalogItem]) -> None:
    close = getattr(stream, "close", None)
    if close is not None:
        close()


def run(
    catalog_reader: CatalogReader,
    prober: Prober,
    config: Optional[RunConfig] = None,
    *,
    cutoff_epoch_seconds: Optional[int] = None,
    validators_lookup: Optional[ValidatorsLookup] = None,
    cancel_event: Optional[threading.Event] = None,
    on_outcome: Optional[OutcomeHook] = None,
) -> RunSummary:
    """Probe every recent catalog candidate and aggregate the outcomes.

    Raises CatalogError subclasses for catalog-level failures; per-candidate
    failures are only ever reported through the returned summary.

    The stream is read one item ahead so that a run cancelled after its last
    candidate is not reported as partial. The look-ahead item is only counted
    as pulled once it is handed to a worker.
    """
    config = config or RunConfig()
    cutoff = compute_cutoff(staleness_days=config.staleness_days) if cutoff_epoch_seconds is None else cutoff_epoch_seconds
    budget = probe_budget_seconds(config)
    summary = RunSummary()
    logger.info(
        "run.start",
        extra={"cutoff": cutoff, "limit": config.limit, "workers": config.workers},
    )

    stream = iter(catalog_reader.list_recent_candidates(cutoff, config.limit))
    executor = ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="probe")
    in_flight: Dict[Future[FreshnessOutcome], _ProbeJob] = {}
    pending: object = None
    overrun = 0
    abandoned = True
    try:
        pending = _pull(stream)
        while True:
            while pending is not _END and len(in_flight) < config.workers:
                if cancel_event is not None and cancel_event.is_set():
                    break
                item, pending = pending, _pull(stream)
                summary.candidates_pulled += 1
                if isinstance(item, MalformedCandidate):
                    outcome = FreshnessOutcome(
                        candidate_id=item.candidate_id,
                        status=ProbeStatus.PROTOCOL_ERROR,
                        reason=item.reason,
                    )
                    _record(summary, item, outcome, on_outcome)
                    continue
                validators = validators_lookup(item) if validators_lookup is not None else None
                job = _ProbeJob(item)
                future = executor.submit(_run_job, job, prober, validators, config, cancel_event)
                in_flight[future] = job

            if not in_flight:
                break
            done, _ = wait(in_flight, timeout=_wait_timeout(in_flight.values(), budget), return_when=FIRST_COMPLETED)
            for future in done:
                job = in_flight.pop(future)
                _record(summary, job.item, future.result(), on_outcome)

            now = time.monotonic()
            for future, job in list(in_flight.items()):
                if future.done() or job.started_at is None or now - job.started_at < budget:
                    continue
                # The worker thread is left to finish on its own; its result is discarded.
                del in_flight[future]
                overrun += 1
                logger.warning(
                    "probe.deadline_exceeded",
                    extra={"candidate_id": job.item.id, "url": job.item.endpoint_url, "budget_seconds": budget},
                )
                outcome = FreshnessOutcome(
                    candidate_id=job.item.id,
                    status=ProbeStatus.UNREACHABLE,
                    reason=f"timeout: no response within {budget:g}s",
                )
                _record(summary, job.item, outcome, on_outcome)
        abandoned = False
    except CatalogError as exc:
        logger.error(
            "run.catalog_failed",
            extra={"error": str(exc), "error_type": exc.__class__.__name__, "pulled": summary.candidates_pulled},
        )
        raise
    finally:
        _close_stream(stream)
        executor.shutdown(wait=not abandoned and not overrun, cancel_futures=abandoned)

    summary.partial = pending is not _END
    summary.finished_at = datetime.now(timezone.utc)
    if summary.partial:
        logger.warning("run.cancelled", extra={"pulled": summary.candidates_pulled})
    logger.info(
        "run.finished",
        extra={
            "pulled": summary.candidates_pulled,
            "partial": summary.partial,
            **{status.value: count for status, count in summary.counts.items()},
        },
    )
    return summary


class PipelineOrchestrator:
    """Binds a catalog reader, a prober and a RunConfig for repeated runs."""

    def __init__(self, catalog_reader: CatalogReader, prober: Prober, config: Optional[RunConfig] = None) -> None:
        self.catalog_reader = catalog_reader
        self.prober = prober
        self.config = config or RunConfig()

    def run(self, **kwargs) -> RunSummary:  # noqa: ANN003
        return run(self.catalog_reader, self.prober, self.config, **kwargs)
