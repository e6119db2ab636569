"""
JWT Auth Middleware — turns the Bearer token into ``g.actor``.

The token is issued by the shop's identity provider; this service only
verifies it (HS256, JWT_SECRET_KEY) and reads three claims:

    sub      user id
    role     role name (admin | shop_manager | mechanic | viewer | …)
    shop_id  the shop the user acts in

Every /api/v1/ route except health checks requires a valid token; a
missing, expired or malformed token is answered with 401 before the view
runs.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from inspectflow.core.actor import ActorContext
from inspectflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)

_REQUIRED_CLAIMS = ("sub", "role", "shop_id")


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def decode_access_token(token: str) -> dict:
    """Verify signature + expiry and return the claims. Raises pyjwt.InvalidTokenError."""
    return pyjwt.decode(
        token,
        _get_secret(),
        algorithms=[ALGORITHM],
        options={"require": list(_REQUIRED_CLAIMS)},
    )


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.actor = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None
        if request.method == "OPTIONS":
            return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return api_error(E.UNAUTHORIZED, "Authentication required")

        token = auth_header[7:]
        try:
            claims = decode_access_token(token)
            g.actor = ActorContext.from_claims(claims)
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHORIZED, "Token has expired")
        except (pyjwt.InvalidTokenError, KeyError, TypeError, ValueError) as exc:
            logger.info("Rejected bearer token on %s: %s", path, exc)
            return api_error(E.UNAUTHORIZED, "Invalid token")
        return None
