"""Persistence operations for scrape requests, transactions and logs.

All writes go through a synchronous SQLAlchemy session so that intake and
Celery tasks share one code path.  The session factory is injectable; it
defaults to :func:`bulk_scraper.core.database.get_sync_session`, imported
lazily so that tests can run the store against SQLite without the
production engines ever being created.

Duplicate detection is closed against concurrent submissions by *claiming*
URLs: :meth:`ScrapeStore.claim_urls` inserts a ``processing`` row for each
URL inside its own SAVEPOINT, and the partial unique index on
``transactions.url`` rejects any second claim.  An ``IntegrityError`` is the
authoritative duplicate signal; the earlier :meth:`find_existing_urls`
lookup is only a bulk pre-filter.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bulk_scraper.core.models.scraping import (
    LogType,
    ScrapeLog,
    ScrapeRequest,
    ScrapeStatus,
    Transaction,
    TransactionStatus,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

#: Upper bound on bound parameters per ``IN (...)`` existence query.
_LOOKUP_CHUNK = 1000


@dataclass(frozen=True)
class BatchProgress:
    """Request-level counters after a batch has been accounted for."""

    scrape_id: str
    expected_batches: int
    completed_batches: int
    progress: int
    status: str

    @property
    def completed(self) -> bool:
        return self.status == ScrapeStatus.COMPLETED.value


@dataclass(frozen=True)
class ClaimResult:
    claimed: list[str]
    duplicates: list[str]


def _default_session_factory() -> AbstractContextManager[Session]:
    from bulk_scraper.core.database import get_sync_session  # noqa: PLC0415

    return get_sync_session()


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _progress(completed: int, expected: int) -> int:
    if expected <= 0:
        return 100
    return min(100, math.floor(completed * 100 / expected))


def _duplicate_metadata(url: str, detected_at: datetime) -> dict[str, Any]:
    return {
        "originalUrl": url,
        "detectedAt": detected_at.isoformat(),
        "validationMessage": "URL has already been processed previously",
    }


class ScrapeStore:
    """Store contract: CRUD for requests, transactions and logs.

    Args:
        session_factory: Zero-argument callable returning a context manager
            that yields a :class:`~sqlalchemy.orm.Session`.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or _default_session_factory

    # ------------------------------------------------------------------
    # Scrape requests
    # ------------------------------------------------------------------

    def create_scrape(self, urls: Sequence[str], tag: str | None = None) -> str:
        with self._session_factory() as session:
            scrape = ScrapeRequest(
                urls=list(urls),
                tag=tag,
                status=ScrapeStatus.PROCESSING.value,
            )
            session.add(scrape)
            session.commit()
            return str(scrape.id)

    def get_scrape(self, scrape_id: str) -> ScrapeRequest | None:
        with self._session_factory() as session:
            return session.get(ScrapeRequest, _as_uuid(scrape_id))

    def set_expected_batches(self, scrape_id: str, expected: int) -> BatchProgress:
        """Record how many job graphs the request spans.

        Also finalises the request when every expected batch has already
        been aggregated, which covers requests with zero batches (all URLs
        invalid or duplicated) and partial submissions.
        """
        with self._session_factory() as session:
            scrape = session.execute(
                select(ScrapeRequest)
                .where(ScrapeRequest.id == _as_uuid(scrape_id))
                .with_for_update()
            ).scalar_one()
            scrape.expected_batches = expected
            scrape.progress = _progress(scrape.completed_batches, expected)
            if scrape.completed_batches >= expected:
                scrape.status = ScrapeStatus.COMPLETED.value
            session.commit()
            return BatchProgress(
                scrape_id=str(scrape.id),
                expected_batches=scrape.expected_batches,
                completed_batches=scrape.completed_batches,
                progress=scrape.progress,
                status=scrape.status,
            )

    def record_batch(
        self,
        scrape_id: str,
        parent_id: str,
        *,
        message: str,
        length: int,
        succeed: int,
        failed: int,
        duration: int,
        completed_at: datetime | None = None,
    ) -> BatchProgress | None:
        """Append the batch ``Log`` row for *parent_id* and count the batch.

        The log row is inserted first, inside a SAVEPOINT; the unique index
        on ``logs.parent_id`` admits one row per batch, so a redelivered
        aggregation gets an ``IntegrityError`` and counts nothing.  The
        counter increment is a single ``UPDATE ... SET completed_batches =
        completed_batches + 1`` so concurrent aggregators of sibling batches
        never lose an update.  The request switches to ``completed`` only
        once the counter reaches ``expected_batches``.

        Returns:
            The updated counters, or ``None`` if the batch was already
            recorded.
        """
        sid = _as_uuid(scrape_id)
        with self._session_factory() as session:
            entry = ScrapeLog(
                scrapes_id=sid,
                parent_id=parent_id,
                type=LogType.BATCH.value,
                status=ScrapeStatus.COMPLETED.value,
                message=message,
                length=length,
                succeed=succeed,
                failed=failed,
                duration=duration,
                completed_at=completed_at,
            )
            try:
                with session.begin_nested():
                    session.add(entry)
            except IntegrityError:
                logger.info("batch already recorded", scrape_id=str(sid), parent_id=parent_id)
                return None

            session.execute(
                update(ScrapeRequest)
                .where(ScrapeRequest.id == sid)
                .values(completed_batches=ScrapeRequest.completed_batches + 1)
            )
            scrape = session.execute(
                select(ScrapeRequest).where(ScrapeRequest.id == sid).with_for_update()
            ).scalar_one()
            session.refresh(scrape)
            scrape.progress = _progress(scrape.completed_batches, scrape.expected_batches)
            if scrape.completed_batches >= scrape.expected_batches:
                scrape.status = ScrapeStatus.COMPLETED.value
            entry.metadata_ = {
                "progress": scrape.progress,
                "completedBatches": scrape.completed_batches,
                "expectedBatches": scrape.expected_batches,
            }
            session.commit()
            return BatchProgress(
                scrape_id=str(scrape.id),
                expected_batches=scrape.expected_batches,
                completed_batches=scrape.completed_batches,
                progress=scrape.progress,
                status=scrape.status,
            )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def find_existing_urls(self, urls: Iterable[str]) -> set[str]:
        """Return the subset of *urls* already present anywhere in the store."""
        pending = list(dict.fromkeys(urls))
        found: set[str] = set()
        with self._session_factory() as session:
            for start in range(0, len(pending), _LOOKUP_CHUNK):
                chunk = pending[start : start + _LOOKUP_CHUNK]
                rows = session.execute(
                    select(Transaction.url).where(Transaction.url.in_(chunk)).distinct()
                ).scalars()
                found.update(rows)
        return found

    def record_invalid(self, scrape_id: str, urls: Sequence[str], tag: str | None = None) -> None:
        if not urls:
            return
        sid = _as_uuid(scrape_id)
        with self._session_factory() as session:
            session.add_all(
                Transaction(
                    scrapes_id=sid,
                    url=url,
                    status=TransactionStatus.INVALID.value,
                    tag=tag,
                    content="",
                    metadata_={
                        "errorType": "VALIDATION_ERROR",
                        "validationMessage": "Invalid URL format",
                    },
                )
                for url in urls
            )
            session.commit()

    def record_duplicates(
        self, scrape_id: str, urls: Sequence[str], tag: str | None = None
    ) -> None:
        if not urls:
            return
        sid = _as_uuid(scrape_id)
        detected_at = datetime.now(tz=timezone.utc)
        with self._session_factory() as session:
            session.add_all(
                Transaction(
                    scrapes_id=sid,
                    url=url,
                    status=TransactionStatus.DUPLICATED.value,
                    tag=tag,
                    content="",
                    metadata_=_duplicate_metadata(url, detected_at),
                )
                for url in urls
            )
            session.commit()

    def claim_urls(
        self, scrape_id: str, urls: Sequence[str], tag: str | None = None
    ) -> ClaimResult:
        """Insert a ``processing`` row per URL; conflicting URLs become duplicates.

        Each insert runs in its own SAVEPOINT so that one conflict does not
        roll back the claims already made in this call.
        """
        sid = _as_uuid(scrape_id)
        claimed: list[str] = []
        conflicts: list[str] = []
        with self._session_factory() as session:
            for url in urls:
                try:
                    with session.begin_nested():
                        session.add(
                            Transaction(
                                scrapes_id=sid,
                                url=url,
                                status=TransactionStatus.PROCESSING.value,
                                tag=tag,
                            )
                        )
                except IntegrityError:
                    conflicts.append(url)
                    continue
                claimed.append(url)

            detected_at = datetime.now(tz=timezone.utc)
            for url in conflicts:
                session.add(
                    Transaction(
                        scrapes_id=sid,
                        url=url,
                        status=TransactionStatus.DUPLICATED.value,
                        tag=tag,
                        content="",
                        metadata_=_duplicate_metadata(url, detected_at),
                    )
                )
            session.commit()

        if conflicts:
            logger.info(
                "claim conflicts resolved as duplicates",
                scrape_id=str(sid),
                duplicates=len(conflicts),
            )
        return ClaimResult(claimed=claimed, duplicates=conflicts)

    def complete_transaction(
        self,
        scrape_id: str,
        url: str,
        status: str,
        content: str | None,
        metadata: dict[str, Any],
    ) -> bool:
        """Write the terminal outcome for a claimed URL.

        Only a row still in ``processing`` is updated, so a terminal row is
        never rewritten and a redelivered job becomes a no-op.  If no claim
        exists (it was lost), the terminal row is inserted directly and the
        unique index again decides the winner.

        Returns:
            ``True`` if this call wrote the terminal row.
        """
        sid = _as_uuid(scrape_id)
        with self._session_factory() as session:
            result = session.execute(
                update(Transaction)
                .where(
                    Transaction.scrapes_id == sid,
                    Transaction.url == url,
                    Transaction.status == TransactionStatus.PROCESSING.value,
                )
                .values(
                    {
                        Transaction.status: status,
                        Transaction.content: content or "",
                        Transaction.metadata_: metadata,
                    }
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                session.commit()
                return True

            already_claimed = session.execute(
                select(func.count())
                .select_from(Transaction)
                .where(
                    Transaction.url == url,
                    Transaction.status.not_in(
                        [TransactionStatus.DUPLICATED.value, TransactionStatus.INVALID.value]
                    ),
                )
            ).scalar_one()
            if already_claimed:
                logger.info("terminal row already written", scrape_id=str(sid), url=url)
                return False

            try:
                with session.begin_nested():
                    session.add(
                        Transaction(
                            scrapes_id=sid,
                            url=url,
                            status=status,
                            content=content or "",
                            metadata_=metadata,
                        )
                    )
            except IntegrityError:
                logger.info("terminal row lost insert race", scrape_id=str(sid), url=url)
                return False
            session.commit()
            return True

    def list_transactions(self, scrape_id: str) -> list[Transaction]:
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(Transaction)
                    .where(Transaction.scrapes_id == _as_uuid(scrape_id))
                    .order_by(Transaction.created_at, Transaction.url)
                ).scalars()
            )

    def transaction_counts(self, scrape_id: str) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(Transaction.status, func.count())
                .where(Transaction.scrapes_id == _as_uuid(scrape_id))
                .group_by(Transaction.status)
            ).all()
        return {status: count for status, count in rows}

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def add_log(
        self,
        scrape_id: str,
        *,
        log_type: LogType,
        status: str,
        message: str,
        length: int | None = None,
        succeed: int | None = None,
        failed: int | None = None,
        duration: int | None = None,
        completed_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._session_factory() as session:
            session.add(
                ScrapeLog(
                    scrapes_id=_as_uuid(scrape_id),
                    type=log_type.value,
                    status=status,
                    message=message,
                    length=length,
                    succeed=succeed,
                    failed=failed,
                    duration=duration,
                    completed_at=completed_at,
                    metadata_=metadata,
                )
            )
            session.commit()

    def list_logs(self, scrape_id: str) -> list[ScrapeLog]:
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(ScrapeLog)
                    .where(ScrapeLog.scrapes_id == _as_uuid(scrape_id))
                    .order_by(ScrapeLog.created_at)
                ).scalars()
            )
