"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in buildtrack/__init__.py with no default
limits; this module applies granular limits per blueprint.

Usage:
    from buildtrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Progress endpoints: PROGRESS_RATE_LIMIT (default 60/minute)
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    progress_limit = app.config.get("PROGRESS_RATE_LIMIT", "60/minute")
    bp = app.blueprints.get("progress")
    if bp:
        limiter.limit(progress_limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: progress %s, health exempt", progress_limit)
