"""
Rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter. The Limiter instance is
created in inspectflow/__init__.py with no default limits; this module
applies granular limits per route category.

Usage:
    from inspectflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

WRITE_LIMIT = "120/minute"
ADMIN_LIMIT = "30/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Inspection + item endpoints: 120/minute
        - Permission, rule and audit: 30/minute
        - Health check:                exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("inspection")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("permission", "business_rule", "audit"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(ADMIN_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: inspections %s, admin %s", WRITE_LIMIT, ADMIN_LIMIT
    )
