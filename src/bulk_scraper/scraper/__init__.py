"""Bulk scraping orchestration.

Sub-modules:
- ``config``            - defaults, strategy signatures, HTTP constants
- ``url_validator``     - syntactic URL validation
- ``classifier``        - strategy classification (static vs. rendering)
- ``deduplicator``      - invalid / duplicate / new partitioning at intake
- ``planner``           - batch chunking and job-graph construction
- ``flow``              - queue backend contract and the Celery chord backend
- ``resource_gate``     - per-attempt admission check and periodic monitor
- ``executor``          - one URL through its strategy to a terminal record
- ``aggregator``        - per-batch fan-in and request completion
- ``service``           - intake orchestration used by the API
- ``fetchers``          - the fetch collaborators (httpx, Playwright)
- ``tasks``             - Celery tasks wrapping executor and aggregator
- ``router``            - FastAPI router (``/scraper``)
"""
