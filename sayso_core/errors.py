"""
Error types for Sayso Core.

This module defines all exception types raised by the core layer:
- CoreError: Base exception
- UnauthorizedError: The policy evaluator denied the operation
- NotFoundError: The target resource does not exist
- ConflictError: A uniqueness constraint rejected the write
- TransientError: Store contention or unavailability, safe to retry
- InvariantViolationError: A structural invariant was found broken
- ValidationError: Caller supplied malformed input

Invariants:
    - All errors inherit from CoreError
    - UnauthorizedError never says which ownership check failed
    - Only TransientError is retryable

How to change safely:
    - New error types must subclass CoreError and set a stable code
    - Never put secrets or other users' data into details
"""

from __future__ import annotations

from typing import Any

NOT_PERMITTED = "not permitted"


class CoreError(Exception):
    """Base exception for all Sayso Core errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        retryable: Whether the same call may succeed if repeated
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CORE_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a boundary layer response body."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class UnauthorizedError(CoreError):
    """The requesting identity may not perform the operation.

    The message is always the generic "not permitted". The rule that was
    consulted is kept for audit logging only.
    """

    def __init__(self, rule: str | None = None) -> None:
        super().__init__(NOT_PERMITTED, code="UNAUTHORIZED")
        self.rule = rule


class NotFoundError(CoreError):
    """The target resource does not exist."""

    def __init__(self, resource_type: str, resource_id: str | None) -> None:
        super().__init__(
            f"{resource_type} not found",
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(CoreError):
    """A uniqueness constraint rejected the write.

    Raised when:
    - The same identity votes twice on one review
    - An ingested or merged row collides with an existing natural key

    Callers that treat the operation as idempotent map this to a no-op.
    """

    def __init__(self, message: str, constraint: str | None = None) -> None:
        super().__init__(message, code="CONFLICT", details={"constraint": constraint})
        self.constraint = constraint


class TransientError(CoreError):
    """Store contention or a temporarily unavailable dependency."""

    retryable = True

    def __init__(self, message: str, cause: str | None = None) -> None:
        super().__init__(message, code="TRANSIENT", details={"cause": cause})


class InvariantViolationError(CoreError):
    """A structural invariant was found broken.

    This indicates a write that bypassed the uniqueness guard. It is
    logged at CRITICAL wherever it is raised.
    """

    def __init__(self, invariant: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"Invariant violated: {invariant}",
            code="INVARIANT_VIOLATION",
            details={"invariant": invariant, **(details or {})},
        )
        self.invariant = invariant


class ValidationError(CoreError):
    """Caller supplied a malformed value.

    Raised when:
    - A rating is outside 1..5
    - An update names a field that cannot be edited
    - A guest submission has no guest name
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field_name})
        self.field_name = field_name
