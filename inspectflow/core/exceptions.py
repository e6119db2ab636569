"""
Engine-wide exception hierarchy.

Services raise these types; the application factory registers one error
handler per type so every blueprint gets consistent HTTP status codes.

Expected outcomes of normal use (illegal transition, missing permission,
safety block, rule violation) are NOT exceptions: they come back as
structured ``ValidationResult`` / ``TransitionResult`` objects. Only
conditions the caller must decide a retry policy for are raised here.

Usage:
    from inspectflow.core.exceptions import NotFoundError, ConcurrencyConflictError

    raise NotFoundError(resource="Inspection", resource_id=42, shop_id=3)
    raise ConcurrencyConflictError(inspection_id=42, expected_version=3, actual_version=4)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the actor's shop.

    Used for BOTH genuinely missing records AND cross-shop access attempts,
    so a caller cannot probe for inspections belonging to another shop.

    Args:
        resource: Human-readable entity name (e.g. "Inspection").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        shop_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        shop_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.shop_id = shop_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if shop_id is not None:
            msg += f" (shop={shop_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a service-layer rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConcurrencyConflictError(Exception):
    """Raised when an inspection changed between read and conditional write.

    The whole operation must be retried from a fresh read. Maps to HTTP 409.

    Args:
        inspection_id: The inspection whose ``version`` did not match.
        expected_version: The version the caller (or the engine's own read) held.
        actual_version: The version found in the store, when known.
    """

    def __init__(
        self,
        inspection_id: int,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.inspection_id = inspection_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Inspection id={inspection_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}"
            if actual_version is not None:
                msg += f", found {actual_version}"
            msg += ")"
        super().__init__(msg)


class PersistenceError(Exception):
    """Raised when a transaction could not commit and was rolled back.

    Generic and retryable. Maps to HTTP 503.
    """


class PermissionDeniedError(Exception):
    """Raised by non-transition operations when the actor lacks a permission.

    Transition attempts report a missing permission inside their structured
    result instead. Maps to HTTP 403.

    Args:
        permission: The codename that was required.
    """

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(f"Missing permission: {permission}")


class ProtectedRoleError(Exception):
    """Raised when a caller tries to change a system role's permission mapping.

    System roles are shared by every shop and change only through seeding.
    Maps to HTTP 403.
    """

    def __init__(self, role_name: str) -> None:
        self.role_name = role_name
        super().__init__(f"System role '{role_name}' cannot be modified")
