"""
Engine-wide exception hierarchy.

Every service raises one of these types so callers (an API layer, a CLI
command, a scheduler) can map outcomes to responses in a single place.

Usage:
    from accesscert.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Campaign", resource_id=42)
    raise ValidationError("rationale is required", details={"rationale": "..."})

Mapping used by callers:
    ValidationError     -> 400 / 422
    NotFoundError       -> 404
    AuthorizationError  -> 403
    StateConflictError  -> 409 ("someone already handled this")
    ConflictError       -> 409 (duplicate unique value)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-organization
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Campaign", "ReviewItem").
        resource_id: The PK that was looked up. Included in logs, not in responses.
        organization_id: Optional. The scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if organization_id is not None:
            msg += f" (organization={organization_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails validation in the service layer.

    Always raised before any write, so a caller never has to roll back
    after catching it.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the acting user does not own the resource they act on.

    Kept distinct from NotFoundError so logs can tell the two apart; callers
    may still render both the same way.
    """

    def __init__(self, message: str, actor_id: int | None = None) -> None:
        self.actor_id = actor_id
        super().__init__(message)


class StateConflictError(Exception):
    """Raised when an entity is not in a state that allows the operation.

    Covers wrong campaign status, review items that are no longer pending and
    violations that were already resolved, including the losing side of a
    concurrent write.

    Args:
        resource: Model name.
        resource_id: PK (or list of PKs for batch operations).
        current_state: The state observed at check or write time, if known.
        message: Optional override for the default message.
    """

    def __init__(
        self,
        resource: str,
        resource_id=None,
        current_state: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_state = current_state
        if message is None:
            message = f"{resource} id={resource_id} is in state {current_state!r}"
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
