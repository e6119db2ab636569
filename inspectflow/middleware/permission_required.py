"""
Permission Decorators — RBAC guards for routes that are not transitions.

Usage:
    @bp.route("/api/v1/business-rules", methods=["POST"])
    @require_permission("rules.manage")
    def create_rule():
        ...

Transition endpoints do NOT use these: the workflow engine checks the
target-specific permission itself and reports a denial inside its result.
"""

import functools
import logging

from flask import g

from inspectflow.services.permission_service import has_permission
from inspectflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def require_permission(codename: str):
    """
    Decorator: require the authenticated actor to hold ``codename``.

    There is no superuser bypass; admin passes because its role maps to
    every permission.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")

            if not has_permission(actor, codename):
                logger.warning(
                    "User %d denied: missing permission '%s' on %s",
                    actor.user_id, codename, f.__name__,
                    extra={"shop_id": actor.shop_id, "user_id": actor.user_id},
                )
                return api_error(
                    E.FORBIDDEN, f"Missing permission: {codename}",
                    details={"required": codename},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator


def require_any_permission(*codenames: str):
    """Decorator: require at least ONE of the listed permissions."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")

            if not any(has_permission(actor, c) for c in codenames):
                logger.warning(
                    "User %d denied: missing any of %s on %s",
                    actor.user_id, codenames, f.__name__,
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied",
                    details={"required_any": list(codenames)},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator
