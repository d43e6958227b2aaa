"""Governance error taxonomy.

Validation problems are returned as lists of strings and never raised.
Everything here is raised for authorization, state and concurrency
failures; ``status_code`` is what the HTTP layer maps each class to.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for all governance failures surfaced to callers."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(GovernanceError):
    status_code = 404


class ForbiddenError(GovernanceError):
    """Wrong actor or role for the requested operation."""

    status_code = 403


class NotInGoodStandingError(ForbiddenError):
    """Dues are delinquent; state-advancing actions are blocked."""


class InvalidStateError(GovernanceError):
    """Illegal transition or operation for the proposal's current state."""

    status_code = 400


class EffectsInvalidError(InvalidStateError):
    """Declared effects failed validation at creation or resubmission."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid effects: {'; '.join(errors)}")
        self.errors = errors


class ConflictError(GovernanceError):
    """Another writer changed the proposal status first."""

    status_code = 409


class DuplicateHandlerError(ValueError):
    """An effect handler was registered twice for the same type."""


class EffectExecutionError(RuntimeError):
    """Raised inside the effects transaction to force a rollback."""
