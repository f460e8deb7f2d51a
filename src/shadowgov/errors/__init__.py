"""Error handling for the governance engine.

This package provides the exception hierarchy raised across engine operation
boundaries and the retry/circuit-breaker helpers used for collaborator calls.
"""

from .exceptions import (
    ArticleViolation,
    ConfigurationError,
    ConflictError,
    ConstitutionalViolation,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    ExternalServiceError,
    GovernanceError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    StorageError,
    UnauthorizedError,
    ValidationError,
    create_state_error,
    create_validation_error,
)
from .recovery import CircuitBreaker, CircuitState, RetryPolicy, call_with_retry

__all__ = [
    # Exceptions
    "GovernanceError",
    "ValidationError",
    "ConstitutionalViolation",
    "ArticleViolation",
    "NotFoundError",
    "UnauthorizedError",
    "StateError",
    "ConflictError",
    "InsufficientFundsError",
    "StorageError",
    "ExternalServiceError",
    "ConfigurationError",
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorContext",
    "create_validation_error",
    "create_state_error",
    # Recovery
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitState",
    "call_with_retry",
]
