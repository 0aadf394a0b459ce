"""adsync - Meta Ads synchronization engine.

WHAT:
    Pulls campaigns, ad sets and ads from the Meta Marketing API, resolves the
    best available creative assets and returns normalized, insert-ready records.

WHY:
    The compliance dashboard needs a faithful copy of every creative an account
    is running. The engine keeps that work separate from persistence and UI.

LAYOUT:
    - config.py: Settings loaded from environment / .env
    - exceptions.py: Error taxonomy shared by every component
    - models.py: Enums, status vocabulary, Integration
    - schemas.py: Pydantic DTOs and normalized records
    - services/: Fetcher, paginator, batch executor, asset resolver, orchestrator
    - workers/: Calling layer (lock, persistence, CLI)
    - telemetry/: Sentry error reporting
"""

__version__ = "0.1.0"
