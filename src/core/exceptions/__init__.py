from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    DuplicateError,
    InvalidTransitionError,
    AlreadySettledError,
    ObligationUnavailableError,
    DisambiguationExhaustedError,
    StaleRequestError,
    DuplicateGrantError,
    ConcurrencyConflictError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "DuplicateError",
    "InvalidTransitionError",
    "AlreadySettledError",
    "ObligationUnavailableError",
    "DisambiguationExhaustedError",
    "StaleRequestError",
    "DuplicateGrantError",
    "ConcurrencyConflictError",
]
