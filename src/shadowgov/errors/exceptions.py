"""Exception hierarchy for the governance engine.

Every error raised across an engine operation boundary derives from
``GovernanceError`` and carries a category, a severity and an optional
structured context so callers can map failures onto their own surface.
"""

import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories."""

    VALIDATION = "validation"
    CONSTITUTIONAL = "constitutional"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    STATE = "state"
    CONFLICT = "conflict"
    FUNDS = "funds"
    STORAGE = "storage"
    EXTERNAL = "external"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


@dataclass
class ErrorContext:
    """Context information for an error."""

    timestamp: float = field(default_factory=time.time)
    component: Optional[str] = None
    operation: Optional[str] = None
    poll_id: Optional[str] = None
    request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary."""
        return {
            "timestamp": self.timestamp,
            "component": self.component,
            "operation": self.operation,
            "poll_id": self.poll_id,
            "request_id": self.request_id,
            "metadata": self.metadata,
        }


class GovernanceError(Exception):
    """Base exception for all governance engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        retryable: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.category = category
        self.context = context or ErrorContext()
        self.cause = cause
        self.retryable = retryable
        self.metadata = metadata or {}
        self.timestamp = time.time()
        self.traceback = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
            "retryable": self.retryable,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [f"{self.__class__.__name__}: {self.message}"]

        if self.error_code:
            parts.append(f"Code: {self.error_code}")

        if self.severity != ErrorSeverity.MEDIUM:
            parts.append(f"Severity: {self.severity.value}")

        if self.retryable:
            parts.append("Retryable: Yes")

        return " | ".join(parts)


class ValidationError(GovernanceError):
    """Malformed or out-of-range input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        expected: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)
        self.field = field
        self.value = value
        self.expected = expected

    def to_dict(self) -> Dict[str, Any]:
        """Convert validation error to dictionary."""
        data = super().to_dict()
        data.update(
            {
                "field": self.field,
                "value": str(self.value) if self.value is not None else None,
                "expected": str(self.expected) if self.expected is not None else None,
            }
        )
        return data


@dataclass(frozen=True)
class ArticleViolation:
    """A single constitutional article matched by a proposed change."""

    article_number: int
    title: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "article_number": self.article_number,
            "title": self.title,
            "reason": self.reason,
        }


class ConstitutionalViolation(GovernanceError):
    """A proposed change is forbidden by one or more constitutional articles."""

    def __init__(self, violations: List[ArticleViolation], **kwargs):
        numbers = ", ".join(str(v.article_number) for v in violations)
        super().__init__(
            f"Proposal violates constitutional article(s) {numbers}",
            error_code="CONSTITUTIONAL_VIOLATION",
            category=ErrorCategory.CONSTITUTIONAL,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.violations = list(violations)

    @property
    def article_numbers(self) -> List[int]:
        return [v.article_number for v in self.violations]

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [v.to_dict() for v in self.violations]
        return data


class NotFoundError(GovernanceError):
    """A referenced entity does not exist."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.NOT_FOUND, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {"resource_type": self.resource_type, "resource_id": self.resource_id}
        )
        return data


class UnauthorizedError(GovernanceError):
    """Unverified voter, non-owner or non-founder."""

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.AUTHORIZATION, **kwargs)
        self.user_id = user_id
        self.action = action

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"user_id": self.user_id, "action": self.action})
        return data


class StateError(GovernanceError):
    """Operation not permitted in the entity's current state."""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        expected_state: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.STATE, **kwargs)
        self.current_state = current_state
        self.expected_state = expected_state

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "current_state": self.current_state,
                "expected_state": self.expected_state,
            }
        )
        return data


class ConflictError(GovernanceError):
    """Delegation cycle, duplicate record or duplicate signature."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFLICT, **kwargs)


class InsufficientFundsError(GovernanceError):
    """The token economy refused to escrow the requested amount."""

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        amount: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, category=ErrorCategory.FUNDS, **kwargs)
        self.user_id = user_id
        self.amount = amount

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"user_id": self.user_id, "amount": self.amount})
        return data


class StorageError(GovernanceError):
    """Storage error."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["operation"] = self.operation
        return data


class ExternalServiceError(GovernanceError):
    """A collaborator call failed or exceeded its timeout."""

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault("retryable", True)
        super().__init__(message, category=ErrorCategory.EXTERNAL, **kwargs)
        self.service = service
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"service": self.service, "operation": self.operation})
        return data


class ConfigurationError(GovernanceError):
    """Configuration error."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.config_key = config_key
        self.config_value = config_value

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "config_key": self.config_key,
                "config_value": str(self.config_value)
                if self.config_value is not None
                else None,
            }
        )
        return data


def create_validation_error(
    message: str, field: str = None, value: Any = None, expected: Any = None
) -> ValidationError:
    """Create a validation error."""
    return ValidationError(message, field=field, value=value, expected=expected)


def create_state_error(
    message: str, current_state: str = None, expected_state: str = None
) -> StateError:
    """Create a state error."""
    return StateError(
        message, current_state=current_state, expected_state=expected_state
    )
