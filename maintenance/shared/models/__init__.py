# Shared Models
"""
Pydantic models for DynamoDB items, follow-up metadata and directory records.
"""

from maintenance.shared.models.follow_up import (
    FollowUpType,
    FollowUpPriority,
    FollowUpMetadata,
    QuotationReminderMetadata,
    DateConfirmationMetadata,
    WorkReminderMetadata,
    CompletionReminderMetadata,
    parse_metadata,
)
from maintenance.shared.models.dynamo import (
    AccessCode,
    ActiveCodeKey,
    AuditEvent,
    AuditSeverity,
    FollowUpKey,
    FollowUpSchedule,
)
from maintenance.shared.models.directory import Assistance, Building, Supplier

__all__ = [
    # Follow-up metadata
    "FollowUpType",
    "FollowUpPriority",
    "FollowUpMetadata",
    "QuotationReminderMetadata",
    "DateConfirmationMetadata",
    "WorkReminderMetadata",
    "CompletionReminderMetadata",
    "parse_metadata",
    # DynamoDB
    "AccessCode",
    "ActiveCodeKey",
    "AuditEvent",
    "AuditSeverity",
    "FollowUpKey",
    "FollowUpSchedule",
    # Directory
    "Assistance",
    "Building",
    "Supplier",
]
