"""Shared FastAPI dependencies.

Provides:
- ``require_api_key``      - static shared-secret check on ``X-API-Key``
- ``get_scrape_service``   - intake service wired to the Celery backend
- ``get_gate_status``      - current resource reading plus queue depth
"""

from __future__ import annotations

import secrets
from typing import Annotated, Any, Optional

import redis
import structlog
from fastapi import Header, HTTPException, status

from bulk_scraper.config.settings import get_settings
from bulk_scraper.core.schemas.scraping import GateStatusRead

logger = structlog.get_logger(__name__)


async def require_api_key(
    x_api_key: Annotated[Optional[str], Header()] = None,
) -> None:
    """Reject the request with 401 unless ``X-API-Key`` matches the configured secret."""
    expected = get_settings().api_key
    if x_api_key is None or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )


def _redis_client() -> redis.Redis:
    return redis.from_url(get_settings().redis_url, decode_responses=True)


def get_scrape_service() -> Any:
    """Build the intake :class:`~bulk_scraper.scraper.service.ScrapeService`."""
    from bulk_scraper.core.store import ScrapeStore  # noqa: PLC0415
    from bulk_scraper.scraper.deduplicator import Deduplicator  # noqa: PLC0415
    from bulk_scraper.scraper.flow import CeleryQueueBackend, FlowScheduler  # noqa: PLC0415
    from bulk_scraper.scraper.planner import BatchPlanner  # noqa: PLC0415
    from bulk_scraper.scraper.service import ScrapeService  # noqa: PLC0415
    from bulk_scraper.workers.celery_app import celery_app  # noqa: PLC0415

    settings = get_settings()
    store = ScrapeStore()
    return ScrapeService(
        store=store,
        deduplicator=Deduplicator(store),
        planner=BatchPlanner(settings.batch_size),
        scheduler=FlowScheduler(CeleryQueueBackend(celery_app, _redis_client())),
    )


def get_gate_status() -> GateStatusRead:
    """Sample this host against the admission thresholds and read queue depth.

    Queue metrics are best-effort; an unreachable broker yields an empty
    ``queues`` map rather than an error.
    """
    from bulk_scraper.scraper.flow import queue_metrics  # noqa: PLC0415
    from bulk_scraper.scraper.resource_gate import (  # noqa: PLC0415
        AdmissionGate,
        PsutilSampler,
        ResourceThresholds,
    )
    from bulk_scraper.workers.celery_app import celery_app  # noqa: PLC0415

    settings = get_settings()
    gate = AdmissionGate(
        sampler=PsutilSampler(),
        thresholds=ResourceThresholds(
            max_memory_percent=settings.max_memory_percent,
            max_cpu_percent=settings.max_cpu_percent,
        ),
        cooldown=settings.resource_cooldown_seconds,
    )
    admission = gate.check()

    try:
        queues = queue_metrics(celery_app, _redis_client())
    except Exception as exc:  # noqa: BLE001
        logger.warning("queue metrics unavailable", error=str(exc))
        queues = {}

    return GateStatusRead(
        paused=not admission.allowed,
        memory_percent=admission.sample.memory_percent,
        cpu_percent=admission.sample.cpu_percent,
        queues=queues,
    )
