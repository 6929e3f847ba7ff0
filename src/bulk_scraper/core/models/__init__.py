"""ORM models.  Importing this package registers every table on ``Base.metadata``."""

from bulk_scraper.core.models.base import Base
from bulk_scraper.core.models.scraping import (
    TERMINAL_STATUSES,
    LogType,
    ScrapeLog,
    ScrapeRequest,
    ScrapeStatus,
    Transaction,
    TransactionStatus,
)

__all__ = [
    "Base",
    "LogType",
    "ScrapeLog",
    "ScrapeRequest",
    "ScrapeStatus",
    "TERMINAL_STATUSES",
    "Transaction",
    "TransactionStatus",
]
