"""Pydantic request/response schemas for the bulk scraping API."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScrapeCreate(BaseModel):
    """Payload for ``POST /scraper/bulk``.

    Attributes:
        urls: URLs to fetch.  Order is preserved; repeats are recorded as
            duplicates of their first occurrence.
        tag: Optional label copied onto every resulting transaction.
    """

    urls: List[str] = Field(min_length=1)
    tag: Optional[str] = Field(default=None, max_length=255)


class ScrapeAccepted(BaseModel):
    """Synchronous acknowledgement returned by intake."""

    message: str = "Scraping initiated successfully"
    scrape_id: uuid.UUID
    total_urls: int
    new_urls: int
    invalid_urls: int
    duplicate_urls: int
    batches: int


class ScrapeRead(BaseModel):
    """Persisted state of a scrape request, as observed by clients."""

    id: uuid.UUID
    status: str
    tag: Optional[str]
    total_urls: int
    expected_batches: int
    completed_batches: int
    progress: int
    transaction_counts: Dict[str, int]
    created_at: datetime
    updated_at: datetime


class TransactionRead(BaseModel):
    id: uuid.UUID
    url: str
    status: str
    tag: Optional[str]
    metadata: dict = Field(validation_alias="metadata_")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class GateStatusRead(BaseModel):
    """Current admission-gate reading and queue depth."""

    paused: bool
    memory_percent: Optional[float]
    cpu_percent: Optional[float]
    queues: Dict[str, Dict[str, int]]
