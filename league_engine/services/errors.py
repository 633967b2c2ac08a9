"""
Engine error taxonomy.

Every transition raises one of these; the API layer maps them to HTTP
status codes (400, 404, 409).
"""


class EngineError(Exception):
    """Base class for league engine errors."""


class ValidationError(EngineError, ValueError):
    """Input is well-formed but breaks a rule (illegal score, wrong participant, policy)."""


class StateConflictError(EngineError):
    """Current state does not allow the transition, or a concurrent update won.

    Callers may re-fetch and retry.
    """


class NotFoundError(EngineError, LookupError):
    """Referenced league, member, match, court or week does not exist."""


class RecoveryWarning(UserWarning):
    """A self-healing repair on read could not complete."""
