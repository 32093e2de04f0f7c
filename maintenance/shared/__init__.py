# Shared Infrastructure for the Maintenance Engine
"""
Shared infrastructure components for the supplier access and follow-up engine.

This package provides:
- State machine definitions (FollowUpStatus, valid transitions)
- Pydantic models for DynamoDB items and directory records
- Tool implementations for DynamoDB, SES and the audit log
- Configuration management
- Custom exceptions
"""

from maintenance.shared.state_machine import FollowUpStatus, VALID_TRANSITIONS, validate_transition
from maintenance.shared.exceptions import (
    MaintenanceError,
    InvalidAccessCodeError,
    AccessCodeNotFoundError,
    RateLimitedError,
    DispatchError,
    PersistenceError,
    ConditionalWriteError,
    CodeCollisionError,
    InvalidStateTransitionError,
    InvalidFollowUpTypeError,
    FollowUpNotFoundError,
)
from maintenance.shared.config import Settings, get_settings

__all__ = [
    # State machine
    "FollowUpStatus",
    "VALID_TRANSITIONS",
    "validate_transition",
    # Exceptions
    "MaintenanceError",
    "InvalidAccessCodeError",
    "AccessCodeNotFoundError",
    "RateLimitedError",
    "DispatchError",
    "PersistenceError",
    "ConditionalWriteError",
    "CodeCollisionError",
    "InvalidStateTransitionError",
    "InvalidFollowUpTypeError",
    "FollowUpNotFoundError",
    # Config
    "Settings",
    "get_settings",
]
