"""Structured logging for the API and the Celery workers.

Call :func:`configure_logging` once per process: the API does so in
``create_app()``, workers in the ``worker_process_init`` signal.  Modules
log through structlog or stdlib logging::

    logger = structlog.get_logger(__name__)
    logger.info("batch aggregated", scrape_id=scrape_id, succeeded=10)

    logger = logging.getLogger(__name__)
    logger.warning("scraper: HTTP %d for %s", status, url)

Both end in one ``ProcessorFormatter``, so every line carries ``timestamp``,
``level``, ``logger`` and ``event`` plus whatever context was bound with
``structlog.contextvars`` (``request_id`` in the API).
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

#: Event keys whose values never reach the log output.
REDACTED_KEYS: frozenset[str] = frozenset({"api_key", "x_api_key", "authorization", "password"})

#: Longest URL list rendered in full; longer ones are summarised.
MAX_LOGGED_URLS = 20

#: Third-party loggers held at WARNING outside DEBUG.
QUIET_LOGGERS: tuple[str, ...] = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "trafilatura",
    "celery.redirected",
)


def _redact(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() & REDACTED_KEYS:
        event_dict[key] = "[REDACTED]"
    return event_dict


def _summarise_url_lists(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Replace long ``urls`` lists with their head and a count."""
    urls = event_dict.get("urls")
    if isinstance(urls, (list, tuple)) and len(urls) > MAX_LOGGED_URLS:
        event_dict["urls"] = list(urls[:MAX_LOGGED_URLS])
        event_dict["urls_omitted"] = len(urls) - MAX_LOGGED_URLS
    return event_dict


def shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _redact,
        _summarise_url_lists,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(log_level: str = "INFO", *, json_logs: bool | None = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Replaces the root logger's handlers, so repeated calls do not duplicate
    output.

    Args:
        log_level: Level name, case-insensitive.
        json_logs: Emit newline-delimited JSON.  Defaults to ``True`` for
            every level except ``DEBUG``, which gets the console renderer.
    """
    level_name = log_level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    if json_logs is None:
        json_logs = level_name != "DEBUG"

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    pre_chain = shared_processors()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    quiet_level = logging.WARNING if json_logs else level
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
