"""
Rate limiting configuration.

The Limiter instance is created in assignment_sync/__init__.py with no
default limits; this module applies limits per route.

Limits:
    - poll endpoint:  POLL_RATE_LIMIT per caller (each call hits the platform)
    - health probes:  exempt

Usage:
    from assignment_sync.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

_POLL_ENDPOINT = "external_sync.poll_source"


def caller_key() -> str:
    """Rate limit key: the X-User owner if present, else remote IP."""
    owner = flask_request.headers.get("X-User")
    if owner:
        return f"owner:{owner}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the sync API.

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    poll_limit = app.config.get("POLL_RATE_LIMIT", "30/minute")
    view = app.view_functions.get(_POLL_ENDPOINT)
    if view is not None:
        app.view_functions[_POLL_ENDPOINT] = limiter.limit(poll_limit, key_func=caller_key)(view)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — poll: %s per caller", poll_limit)
