"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in portal/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from portal.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow endpoints:   120/minute (client portal + admin UI + webhooks)
        - Catalog / automation: 60/minute  (admin reference-data editing)
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit("120/minute")(bp)

    for bp_name in ("phase_catalog", "automation"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured - workflow: 120/min, admin: 60/min")
