"""
Typed error taxonomy for the authorization engine.

Every failure a caller can observe is one of:
- ValidationError: malformed or incomplete input
- NotFoundError: a referenced permission/role/group/user does not exist
- ConflictError: the request collides with existing state or a protected record

ConsistencyError is internal: it describes a dangling reference found while
resolving effective permissions. It is logged and never raised to callers.
"""
from typing import Optional


class AuthorizationEngineError(Exception):
    """Base class for engine errors that carry a short title and a message."""

    title: str = "Error"

    def __init__(self, message: str, title: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if title is not None:
            self.title = title

    def to_dict(self) -> dict:
        return {"error": self.title, "message": self.message}


class ValidationError(AuthorizationEngineError):
    """Missing field, malformed name, empty resource/action set, bad group default."""

    title = "Validation failed"


class NotFoundError(AuthorizationEngineError):
    """A referenced id does not exist."""

    title = "Not found"


class ConflictError(AuthorizationEngineError):
    """Duplicate name, protected record, or a reference that blocks deletion."""

    title = "Conflict"


class ConsistencyError(AuthorizationEngineError):
    """A role or user references a permission (or role) id that no longer exists."""

    title = "Consistency defect"

    def __init__(self, owner_type: str, owner_id: str, missing_id: str, missing_type: str = "permission"):
        super().__init__(
            f"{owner_type} {owner_id} references missing {missing_type} {missing_id}"
        )
        self.owner_type = owner_type
        self.owner_id = owner_id
        self.missing_id = missing_id
        self.missing_type = missing_type
