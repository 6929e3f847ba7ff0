"""FastAPI router for bulk scraping.

Routes:
    POST   /scraper/bulk          - accept a submission (202)
    GET    /scraper/status        - resource reading and queue depth
    GET    /scraper/{scrape_id}   - request progress and transaction counts

All routes require the ``X-API-Key`` header.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from bulk_scraper.api.dependencies import (
    get_gate_status,
    get_scrape_service,
    require_api_key,
)
from bulk_scraper.core.database import get_db
from bulk_scraper.core.exceptions import FlowSubmissionError, InvalidSubmissionError
from bulk_scraper.core.models.scraping import ScrapeRequest, Transaction
from bulk_scraper.core.schemas.scraping import (
    GateStatusRead,
    ScrapeAccepted,
    ScrapeCreate,
    ScrapeRead,
)

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_api_key)])


@router.post(
    "/bulk",
    response_model=ScrapeAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_bulk_scrape(
    payload: ScrapeCreate,
    service: Annotated[Any, Depends(get_scrape_service)],
) -> ScrapeAccepted:
    """Accept a bulk submission and return its request id.

    Intake runs on a worker thread because the store is synchronous.

    Raises:
        HTTPException 422: The submission holds no URLs.
        HTTPException 503: The queue backend rejected a batch.
    """
    try:
        accepted = await run_in_threadpool(
            service.initiate_scraping, payload.urls, payload.tag
        )
    except InvalidSubmissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except FlowSubmissionError as exc:
        logger.error(
            "bulk submission not fully queued",
            scrape_id=exc.scrape_id,
            submitted_batches=exc.submitted_batches,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Queue unavailable; scrape {exc.scrape_id} was only partially submitted.",
        ) from exc

    logger.info(
        "bulk submission accepted",
        scrape_id=str(accepted.scrape_id),
        total_urls=accepted.total_urls,
        batches=accepted.batches,
    )
    return accepted


@router.get("/status", response_model=GateStatusRead)
async def get_status(
    gate_status: Annotated[GateStatusRead, Depends(get_gate_status)],
) -> GateStatusRead:
    return gate_status


@router.get("/{scrape_id}", response_model=ScrapeRead)
async def get_scrape(
    scrape_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ScrapeRead:
    """Return the persisted state of one request.

    Raises:
        HTTPException 404: No request with this id.
    """
    scrape = await db.get(ScrapeRequest, scrape_id)
    if scrape is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Scrape '{scrape_id}' not found.",
        )

    rows = await db.execute(
        select(Transaction.status, func.count())
        .where(Transaction.scrapes_id == scrape_id)
        .group_by(Transaction.status)
    )
    return ScrapeRead(
        id=scrape.id,
        status=scrape.status,
        tag=scrape.tag,
        total_urls=len(scrape.urls or []),
        expected_batches=scrape.expected_batches,
        completed_batches=scrape.completed_batches,
        progress=scrape.progress,
        transaction_counts={row_status: count for row_status, count in rows.all()},
        created_at=scrape.created_at,
        updated_at=scrape.updated_at,
    )
