"""ORM models for scrape requests, per-URL transactions and batch logs.

``ScrapeRequest`` (table ``scrapes``)
    One row per submission.  Mutated only by intake (batch bookkeeping) and
    by the parent aggregator (progress, completion).

``Transaction`` (table ``transactions``)
    One row per URL that entered the pipeline, plus one ``duplicated`` row
    for every later submission of an already-known URL.  The partial unique
    index ``uq_transactions_url_primary`` makes the store the single arbiter
    of "already processed": at most one row per URL is neither ``invalid``
    nor ``duplicated``.

``ScrapeLog`` (table ``logs``)
    Append-only.  One ``init`` row per submission and one ``batch`` row per
    aggregated batch, keyed by the batch's parent job id.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bulk_scraper.core.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class ScrapeStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"


class TransactionStatus(str, enum.Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    INVALID = "invalid"
    DUPLICATED = "duplicated"
    TIMEOUT = "timeout"


#: Statuses after which a Transaction row is never written again.
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {
        TransactionStatus.SUCCESS.value,
        TransactionStatus.ERROR.value,
        TransactionStatus.INVALID.value,
        TransactionStatus.DUPLICATED.value,
        TransactionStatus.TIMEOUT.value,
    }
)


#: Rows covered by the URL uniqueness guarantee.  Invalid URLs never reach
#: the queue and duplicated rows reference an already-claimed URL, so
#: neither takes part.
_PRIMARY_ROW_CLAUSE = sa.text("status NOT IN ('duplicated', 'invalid')")


class LogType(str, enum.Enum):
    INIT = "init"
    BATCH = "batch"


class ScrapeRequest(TimestampMixin, UUIDPrimaryKeyMixin, Base):
    """A bulk submission of URLs.

    Attributes:
        urls: The submitted URLs in submission order.
        tag: Optional caller-supplied label copied onto every Transaction.
        status: ``processing`` until every planned batch has been aggregated.
        expected_batches: Number of job graphs submitted for this request.
        completed_batches: Number of batches the aggregator has accounted for.
        progress: 0-100, derived from the batch counters.
    """

    __tablename__ = "scrapes"

    urls: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    tag: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        default=ScrapeStatus.PROCESSING.value,
        server_default=ScrapeStatus.PROCESSING.value,
    )
    expected_batches: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0, server_default=sa.text("0")
    )
    completed_batches: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0, server_default=sa.text("0")
    )
    progress: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0, server_default=sa.text("0")
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="scrape", lazy="raise"
    )
    logs: Mapped[list["ScrapeLog"]] = relationship(back_populates="scrape", lazy="raise")

    __table_args__ = (sa.Index("idx_scrapes_status", "status"),)


class Transaction(TimestampMixin, UUIDPrimaryKeyMixin, Base):
    """Processing record for one URL within one submission."""

    __tablename__ = "transactions"

    scrapes_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        sa.ForeignKey("scrapes.id", ondelete="CASCADE"),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        default=TransactionStatus.PROCESSING.value,
    )
    tag: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    content: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    scrape: Mapped[ScrapeRequest] = relationship(back_populates="transactions")

    __table_args__ = (
        sa.Index(
            "uq_transactions_url_primary",
            "url",
            unique=True,
            postgresql_where=_PRIMARY_ROW_CLAUSE,
            sqlite_where=_PRIMARY_ROW_CLAUSE,
        ),
        sa.Index("idx_transactions_scrapes_id", "scrapes_id"),
        sa.Index("idx_transactions_url", "url"),
    )


class ScrapeLog(UUIDPrimaryKeyMixin, Base):
    """Append-only summary row written at intake and after each batch."""

    __tablename__ = "logs"

    scrapes_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        sa.ForeignKey("scrapes.id", ondelete="CASCADE"),
        nullable=False,
    )
    parent_id: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    """Parent job id of the aggregated batch; unset on ``init`` rows."""
    type: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    duration: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    """Batch duration in milliseconds."""
    length: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    succeed: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    failed: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )

    scrape: Mapped[ScrapeRequest] = relationship(back_populates="logs")

    __table_args__ = (
        sa.Index("idx_logs_scrapes_id", "scrapes_id"),
        sa.Index("uq_logs_parent_id", "parent_id", unique=True),
    )
