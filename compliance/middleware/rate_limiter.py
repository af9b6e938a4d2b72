"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in compliance/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from compliance.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

API_LIMIT = "120/minute"
TICK_LIMIT = "6/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Compliance API:   120/minute
        - Tick endpoint:    6/minute (runs a full scheduling pass)
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("compliance")
    if bp:
        limiter.limit(API_LIMIT)(bp)

    tick_view = app.view_functions.get("compliance.run_tick")
    if tick_view:
        limiter.limit(TICK_LIMIT)(tick_view)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: API=%s, tick=%s", API_LIMIT, TICK_LIMIT)
