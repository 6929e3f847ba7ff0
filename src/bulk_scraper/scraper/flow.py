"""Job-graph submission to the queue backend.

A :class:`~bulk_scraper.scraper.planner.JobGraph` maps onto a Celery
``chord``: the children form the header group on the execution queue and the
parent is the chord body on the aggregation queue.  Celery invokes the body
exactly once, after every header task has returned, with the header results
in submission order.

Celery does not reject a reused ``task_id``, so idempotent submission is
enforced here: the parent id is claimed with ``SET NX`` in Redis before the
chord is sent, and a second submission of the same graph is a no-op.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

import redis
import structlog
from celery import Celery, chord, group

from bulk_scraper.core.exceptions import FlowSubmissionError
from bulk_scraper.scraper.config import (
    AGGREGATE_TASK_NAME,
    AGGREGATION_QUEUE,
    EXECUTE_TASK_NAME,
    EXECUTION_QUEUE,
)
from bulk_scraper.scraper.planner import JobGraph

logger = structlog.get_logger(__name__)

#: Idempotency keys outlive any plausible redelivery window.
_SUBMISSION_KEY_TTL = 7 * 24 * 3600


def submission_key(parent_id: str) -> str:
    return f"flow:submitted:{parent_id}"


class QueueBackend(Protocol):
    def add_flow(self, graph: JobGraph) -> bool:
        """Submit *graph* atomically.

        Returns:
            ``True`` if the graph was enqueued, ``False`` if a graph with
            the same parent id had already been submitted.
        """
        ...


class CeleryQueueBackend:
    """Submits job graphs as Celery chords.

    Args:
        app: The Celery application.
        redis_client: Synchronous Redis client holding the idempotency keys.
    """

    def __init__(self, app: Celery, redis_client: redis.Redis) -> None:
        self._app = app
        self._redis = redis_client

    def build_chord(self, graph: JobGraph) -> Any:
        header = group(
            [
                self._app.signature(
                    EXECUTE_TASK_NAME, kwargs={"job": child.to_payload()}
                ).set(task_id=child.id, queue=EXECUTION_QUEUE)
                for child in graph.children
            ]
        )
        body = self._app.signature(
            AGGREGATE_TASK_NAME,
            kwargs={
                "parent": graph.parent.to_payload(),
                "child_ids": [child.id for child in graph.children],
            },
        ).set(task_id=graph.parent.id, queue=AGGREGATION_QUEUE)
        return chord(header, body)

    def add_flow(self, graph: JobGraph) -> bool:
        key = submission_key(graph.parent.id)
        if not self._redis.set(key, "1", nx=True, ex=_SUBMISSION_KEY_TTL):
            logger.info("flow already submitted", parent_id=graph.parent.id)
            return False
        try:
            self.build_chord(graph).apply_async()
        except Exception:
            self._redis.delete(key)
            raise
        return True


class FlowScheduler:
    """Submits every job graph of a request, in batch order."""

    def __init__(self, backend: QueueBackend) -> None:
        self._backend = backend

    def submit(self, scrape_id: str, graphs: Sequence[JobGraph]) -> int:
        """Submit *graphs* and return how many were newly enqueued.

        Raises:
            FlowSubmissionError: The backend failed; ``submitted_batches``
                counts the graphs accepted before the failure.
        """
        log = logger.bind(scrape_id=scrape_id)
        accepted = 0
        enqueued = 0
        for graph in graphs:
            try:
                if self._backend.add_flow(graph):
                    enqueued += 1
            except Exception as exc:
                log.error(
                    "flow submission failed",
                    parent_id=graph.parent.id,
                    submitted_batches=accepted,
                    error=str(exc),
                )
                raise FlowSubmissionError(
                    f"Failed to submit batch {graph.parent.batch_index}: {exc}",
                    scrape_id=scrape_id,
                    submitted_batches=accepted,
                ) from exc
            accepted += 1
            log.info(
                "flow submitted",
                parent_id=graph.parent.id,
                children=len(graph),
            )
        return enqueued


def queue_metrics(app: Celery, redis_client: redis.Redis) -> dict[str, dict[str, int]]:
    """Waiting/active/reserved counts per queue.

    ``waiting`` is the broker list length (Redis transport); ``active`` and
    ``reserved`` come from a broadcast inspect and are 0 when no worker
    replies.
    """
    inspector = app.control.inspect(timeout=1.0)
    active = inspector.active() or {}
    reserved = inspector.reserved() or {}

    def _count(snapshot: dict[str, list[dict[str, Any]]], queue: str) -> int:
        return sum(
            1
            for tasks in snapshot.values()
            for task in tasks
            if (task.get("delivery_info") or {}).get("routing_key") == queue
        )

    return {
        queue: {
            "waiting": int(redis_client.llen(queue)),
            "active": _count(active, queue),
            "reserved": _count(reserved, queue),
        }
        for queue in (AGGREGATION_QUEUE, EXECUTION_QUEUE)
    }
