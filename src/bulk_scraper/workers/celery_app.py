"""Celery application for the bulk scraper.

Configures the broker, result backend, serialization, the two queues and
their routing.  All configuration values are sourced from ``Settings``.

Two worker pools consume the two queues independently::

    celery -A bulk_scraper.workers.celery_app worker -Q execution -c 50 -n exec@%h
    celery -A bulk_scraper.workers.celery_app worker -Q aggregation -c 10 -n agg@%h

Every worker runs a :class:`~bulk_scraper.scraper.resource_gate.ResourceMonitor`
from ``worker_ready`` until ``worker_shutdown``.  It stops the worker's
execution-queue consumer while the host is over its resource thresholds.
"""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.signals import (
    task_postrun,
    worker_process_init,
    worker_ready,
    worker_shutdown,
)
from dotenv import load_dotenv
from kombu import Queue

load_dotenv()

from bulk_scraper.config.settings import get_settings  # noqa: E402
from bulk_scraper.scraper.config import (  # noqa: E402
    AGGREGATE_TASK_NAME,
    AGGREGATION_QUEUE,
    EXECUTE_TASK_NAME,
    EXECUTION_QUEUE,
)

_logger = logging.getLogger(__name__)

settings = get_settings()

#: The global Celery application instance.
celery_app = Celery(
    "bulk_scraper",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["bulk_scraper.scraper.tasks"],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    # Job payloads and child results are plain JSON.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge only after the task finished so a crashed worker's job is
    # redelivered (at-least-once).  Redelivery of a finished job is a no-op
    # because terminal Transaction rows are never rewritten.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # Chord counters and child results must outlive the slowest batch.
    result_expires=86_400,
    task_queues=(
        Queue(AGGREGATION_QUEUE, routing_key=AGGREGATION_QUEUE),
        Queue(EXECUTION_QUEUE, routing_key=EXECUTION_QUEUE),
    ),
    task_default_queue=EXECUTION_QUEUE,
    task_routes={
        EXECUTE_TASK_NAME: {"queue": EXECUTION_QUEUE},
        AGGREGATE_TASK_NAME: {"queue": AGGREGATION_QUEUE},
    },
    task_annotations={
        # Hard stop well after the fetch deadline; the executor's own
        # deadline is what normally ends an attempt.
        EXECUTE_TASK_NAME: {
            "soft_time_limit": settings.job_deadline_seconds
            + settings.resource_cooldown_seconds
            + 60,
            "time_limit": settings.job_deadline_seconds
            + settings.resource_cooldown_seconds
            + 120,
        },
    },
)


# ---------------------------------------------------------------------------
# Process setup: logging and engine disposal after fork
# ---------------------------------------------------------------------------
@worker_process_init.connect
def _init_worker_process(**kwargs: object) -> None:  # noqa: ARG001
    """Configure logging and drop pooled connections inherited from the parent."""
    from bulk_scraper.core.database import dispose_engines  # noqa: PLC0415
    from bulk_scraper.core.logging_config import configure_logging  # noqa: PLC0415

    configure_logging(get_settings().log_level)
    dispose_engines()


@task_postrun.connect
def _dispose_async_engine_after_task(**kwargs: object) -> None:  # noqa: ARG001
    """Drop async pool connections; they belong to the finished task's event loop."""
    from bulk_scraper.core.database import dispose_engines  # noqa: PLC0415

    try:
        dispose_engines(include_sync=False)
    except Exception:  # noqa: BLE001
        _logger.debug("async engine disposal failed", exc_info=True)


# ---------------------------------------------------------------------------
# Resource monitor lifecycle
# ---------------------------------------------------------------------------

_monitor: Any = None


def build_monitor(hostname: str | None = None) -> Any:
    from bulk_scraper.scraper.resource_gate import (  # noqa: PLC0415
        CeleryIntakeController,
        PsutilSampler,
        ResourceMonitor,
        ResourceThresholds,
    )

    cfg = get_settings()
    return ResourceMonitor(
        sampler=PsutilSampler(include_children=True),
        thresholds=ResourceThresholds(
            max_memory_percent=cfg.max_memory_percent,
            max_cpu_percent=cfg.max_cpu_percent,
        ),
        controller=CeleryIntakeController(celery_app, EXECUTION_QUEUE, hostname),
        interval=cfg.monitor_interval_seconds,
    )


def get_monitor() -> Any:
    """The running worker's monitor, or ``None`` outside a worker."""
    return _monitor


@worker_ready.connect
def _start_resource_monitor(sender: Any = None, **kwargs: object) -> None:  # noqa: ARG001
    global _monitor  # noqa: PLW0603
    hostname = getattr(sender, "hostname", None)
    _monitor = build_monitor(hostname)
    _monitor.start()


@worker_shutdown.connect
def _stop_resource_monitor(**kwargs: object) -> None:  # noqa: ARG001
    global _monitor  # noqa: PLW0603
    if _monitor is not None:
        _monitor.stop()
        _monitor = None
