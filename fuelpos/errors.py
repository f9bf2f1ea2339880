from __future__ import annotations


class DomainError(Exception):
    kind = 'domain_error'

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message, 'field': self.field}


class ValidationError(DomainError, ValueError):
    """Malformed or out-of-range input. The caller should re-prompt."""

    kind = 'validation_error'


class ConflictError(DomainError):
    """A reading already exists for the requested scope key."""

    kind = 'conflict'


class StateError(DomainError):
    """The record is in the wrong lifecycle state for the requested operation."""

    kind = 'invalid_state'


class NotFoundError(DomainError, LookupError):
    kind = 'not_found'


class CollaboratorError(DomainError):
    """Storage, fuel type lookup or sibling fetch failed."""

    kind = 'collaborator_unavailable'
