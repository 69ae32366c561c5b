"""Celery task for a freshness-check run."""

from __future__ import annotations

import threading
import uuid
from typing import Any, Dict, Mapping, Optional

from celery import shared_task

from freshness.catalog.sql import SqlCatalogReader
from freshness.models.domain import CacheValidators, FeedCandidate
from freshness.pipeline import RunConfig, ValidatorsLookup, run
from freshness.probe.prober import FreshnessProber
from freshness.settings import get_settings
from freshness.utils.logging import get_logger


def _validators_from_mapping(stored: Optional[Mapping[str, Mapping[str, Any]]]) -> Optional[ValidatorsLookup]:
    """Build a lookup from ``{"<candidate id>": {"etag": ..., "last_modified": ...}}``."""
    if not stored:
        return None
    table: Dict[int, CacheValidators] = {}
    for key, value in stored.items():
        validators = CacheValidators.model_validate(dict(value))
        if not validators.is_empty:
            table[int(key)] = validators

    def lookup(candidate: FeedCandidate) -> Optional[CacheValidators]:
        return table.get(candidate.id)

    return lookup


def check_core(
    limit: Optional[int] = None,
    *,
    validators: Optional[Mapping[str, Mapping[str, Any]]] = None,
    deadline_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Run one freshness check from settings; test-friendly.

    ``deadline_seconds`` cancels the run after that many seconds, returning a
    partial summary instead of being killed mid-run.
    """
    settings = get_settings()
    logger = get_logger(__name__)
    trace_id = str(uuid.uuid4())
    config = RunConfig.from_settings(settings, limit=limit)
    reader = SqlCatalogReader.from_settings(settings)
    cancel = cancel_event or threading.Event()

    timer: Optional[threading.Timer] = None
    if deadline_seconds is not None:
        timer = threading.Timer(deadline_seconds, cancel.set)
        timer.daemon = True
        timer.start()

    logger.info("check.start", extra={"trace_id": trace_id, "limit": config.limit})
    try:
        with FreshnessProber.from_settings(settings) as prober:
            summary = run(
                reader,
                prober,
                config,
                validators_lookup=_validators_from_mapping(validators),
                cancel_event=cancel,
            )
    finally:
        if timer is not None:
            timer.cancel()

    result = summary.as_dict()
    result["trace_id"] = trace_id
    logger.info(
        "check.finished",
        extra={"trace_id": trace_id, "pulled": summary.candidates_pulled, "partial": summary.partial},
    )
    return result


@shared_task(name="freshness.tasks.check.run_freshness_check")
def run_freshness_check(
    limit: Optional[int] = None,
    validators: Optional[Dict[str, Dict[str, Any]]] = None,
) -> Dict[str, Any]:  # pragma: no cover - thin Celery wrapper
    settings = get_settings()
    # Stop pulling candidates early enough for in-flight probes to finish before the soft limit
    deadline = max(1.0, settings.celery_task_soft_time_limit - settings.probe_timeout_seconds)
    return check_core(limit, validators=validators, deadline_seconds=deadline)
