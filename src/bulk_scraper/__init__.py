"""Bulk URL scraping orchestrator.

Accepts bulk URL-fetch requests and drives them to completion through a
two-tier Celery job graph: one aggregation task per batch of URLs, fanning
out to one execution task per URL.
"""

__version__ = "0.1.0"
