"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in planhub/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from planhub.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Review endpoints:   REVIEW_RATE_LIMIT (apply fans out to the
                              regeneration collaborator)
        - Document endpoints: 200/minute
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("review")
    if bp:
        limiter.limit(app.config.get("REVIEW_RATE_LIMIT", "120 per minute"))(bp)

    bp = app.blueprints.get("documents")
    if bp:
        limiter.limit("200/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — review: %s, documents: 200/min",
                    app.config.get("REVIEW_RATE_LIMIT"))
