"""
Error taxonomy shared by the repository and the use-case layer.

Handlers in the web layer map each class to an HTTP answer; everything
else propagates unchanged.
"""

from __future__ import annotations


class NotesError(Exception):
    """Base class for every notepages error."""


class NotFound(NotesError):
    """A keyed entity is missing from the datastore."""

    def __init__(self, entity_type: str, id: str):
        super().__init__(f"{entity_type} '{id}' not found.")
        self.entity_type = entity_type
        self.id = id


class NotAuthorized(NotesError):
    def __init__(self, operation: str):
        super().__init__(f"{operation} not permitted.")
        self.operation = operation


class ValidationError(NotesError):
    def __init__(self, field: str, message: str):
        super().__init__(f"Invalid {field}: {message}")
        self.field = field
        self.message = message


class FirstLoginPending(NotesError):
    """
    The external identity is known to the provider but no local user was
    created for it yet.  Not a failure: it starts the account creation flow.
    """

    def __init__(self, identity):
        super().__init__("User not created")
        self.identity = identity


class StorageFailure(NotesError):
    """Opaque backing-store failure (locks exhausted, I/O, corrupt rows)."""
