"""
Custom Exceptions for the Supplier Access and Follow-Up Engine

All exceptions follow the pattern of specific, actionable errors
with context needed for debugging and logging.
"""

from dataclasses import dataclass
from typing import Any


class MaintenanceError(Exception):
    """Base exception for the maintenance engine."""

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


@dataclass
class InvalidAccessCodeError(MaintenanceError):
    """Submitted access code does not have the expected shape."""

    code_prefix: str
    expected_pattern: str

    def __init__(self, code_prefix: str, expected_pattern: str) -> None:
        self.code_prefix = code_prefix
        self.expected_pattern = expected_pattern
        super().__init__(
            f"Malformed access code '{code_prefix}'",
            code_prefix=code_prefix,
            expected_pattern=expected_pattern,
        )


@dataclass
class AccessCodeNotFoundError(MaintenanceError):
    """No usable access code: unknown or expired. Never exposed verbatim to callers."""

    code_prefix: str
    reason: str  # "not_found", "expired", "supplier_missing"

    def __init__(self, code_prefix: str, reason: str) -> None:
        self.code_prefix = code_prefix
        self.reason = reason
        super().__init__(
            f"Access code '{code_prefix}' is not usable: {reason}",
            code_prefix=code_prefix,
            reason=reason,
        )


@dataclass
class RateLimitedError(MaintenanceError):
    """Too many attempts for a rate-limit key within the current window."""

    key: str
    retry_after: int

    def __init__(self, key: str, retry_after: int) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded, retry after {retry_after}s",
            key=key,
            retry_after=retry_after,
        )


@dataclass
class DispatchError(MaintenanceError):
    """External notification dispatch failed or could not be prepared."""

    template: str | None = None
    recipient: str | None = None

    def __init__(
        self,
        error_message: str,
        *,
        template: str | None = None,
        recipient: str | None = None,
    ) -> None:
        self.template = template
        self.recipient = recipient
        super().__init__(
            f"Dispatch failed{f' for template {template}' if template else ''}: {error_message}",
            template=template,
            recipient=recipient,
        )


@dataclass
class InvalidStateTransitionError(MaintenanceError):
    """Attempted invalid follow-up status transition."""

    current_status: str
    new_status: str
    allowed_transitions: list[str]

    def __init__(
        self,
        current_status: str,
        new_status: str,
        allowed_transitions: list[str],
    ) -> None:
        self.current_status = current_status
        self.new_status = new_status
        self.allowed_transitions = allowed_transitions
        super().__init__(
            f"Cannot transition from '{current_status}' to '{new_status}'. "
            f"Allowed transitions: {allowed_transitions}",
            current_status=current_status,
            new_status=new_status,
            allowed_transitions=allowed_transitions,
        )


@dataclass
class InvalidFollowUpTypeError(MaintenanceError):
    """Follow-up type outside the four supported kinds."""

    follow_up_type: str

    def __init__(self, follow_up_type: str, valid_types: list[str]) -> None:
        self.follow_up_type = follow_up_type
        super().__init__(
            f"Invalid follow-up type: '{follow_up_type}'. Valid values are: {valid_types}",
            follow_up_type=follow_up_type,
        )


@dataclass
class FollowUpNotFoundError(MaintenanceError):
    """Follow-up schedule not found in DynamoDB."""

    follow_up_id: str

    def __init__(self, follow_up_id: str) -> None:
        self.follow_up_id = follow_up_id
        super().__init__(
            f"Follow-up '{follow_up_id}' not found",
            follow_up_id=follow_up_id,
        )


@dataclass
class PersistenceError(MaintenanceError):
    """DynamoDB operation failed."""

    operation: str  # "get", "put", "update", "query", "transact"
    table_name: str

    def __init__(
        self,
        operation: str,
        table_name: str,
        error_message: str | None = None,
    ) -> None:
        self.operation = operation
        self.table_name = table_name
        super().__init__(
            f"DynamoDB {operation} failed on table '{table_name}': {error_message or 'Unknown error'}",
            operation=operation,
            table_name=table_name,
            error_message=error_message,
        )


@dataclass
class ConditionalWriteError(PersistenceError):
    """DynamoDB conditional write failed."""

    def __init__(self, table_name: str, error_message: str | None = None) -> None:
        super().__init__(
            operation="conditional_write",
            table_name=table_name,
            error_message=error_message or "Condition not met",
        )


@dataclass
class CodeCollisionError(ConditionalWriteError):
    """Generated access code already exists."""

    def __init__(self, table_name: str) -> None:
        super().__init__(
            table_name=table_name,
            error_message="Generated access code already exists",
        )
