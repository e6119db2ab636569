"""JSON error bodies shared by every blueprint and app-level error handler.

Every failure leaves the API as ``{"error": <message>, "code": <E.*>}``
with an optional ``details`` object, so clients can branch on ``code``
without parsing the message:

    return api_error(E.NOT_FOUND, "Inspection not found")
    return api_error(E.TRANSITION_REJECTED, "Transition rejected", details={"violations": [...]})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes. Workflow outcomes carry no ``ERR_`` prefix."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"
    TRANSITION_REJECTED = "TRANSITION_REJECTED"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# status -> codes answered with it; anything unlisted is a 400
_CODES_BY_STATUS = {
    401: (E.UNAUTHORIZED,),
    403: (E.FORBIDDEN,),
    404: (E.NOT_FOUND,),
    409: (E.CONFLICT_DUPLICATE, E.CONFLICT_VERSION),
    422: (E.VALIDATION_CONSTRAINT, E.TRANSITION_REJECTED),
    500: (E.INTERNAL,),
    503: (E.DATABASE,),
}
_STATUS_FOR_CODE = {code: status for status, codes in _CODES_BY_STATUS.items() for code in codes}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view; ``status`` overrides the code's default."""
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_FOR_CODE.get(code, 400)
