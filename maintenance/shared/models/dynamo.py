"""
DynamoDB Models

Pydantic models for items in the single MaintenancePortal table.

Key layout:
- Access code:        PK=CODE#<code>                SK=METADATA
- Active code pointer: PK=SUPPLIER#<supplier_id>    SK=ACTIVE_CODE#<assistance_id|NONE>
- Follow-up schedule: PK=FOLLOWUP#<id>              SK=METADATA
                      GSI1PK=FOLLOWUP#<status>      GSI1SK=<due epoch, zero padded>
- Rate-limit window:  PK=RATELIMIT#<key>            SK=WINDOW#<window_start>
- Audit event:        PK=AUDIT#<yyyy-mm-dd>         SK=EVT#<created_at_ms>#<event_id>
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from maintenance.shared.models.follow_up import (
    CompletionReminderMetadata,
    DateConfirmationMetadata,
    FollowUpMetadata,
    FollowUpPriority,
    FollowUpType,
    QuotationReminderMetadata,
    WorkReminderMetadata,
    parse_metadata,
)
from maintenance.shared.state_machine import FollowUpStatus, is_retryable

ACCESS_CODE_PATTERN = r"^[A-Z0-9]{8,32}$"

# Sorts after any real epoch, so `GSI1SK <= :now` never matches it
NEVER_DUE_SORT_KEY = "9" * 12


# =====================================================
# Time helpers
# =====================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(value: datetime) -> int:
    """Datetime to Unix seconds; naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_epoch(value: int | Decimal | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def isoformat_epoch(value: int | None) -> str | None:
    dt = from_epoch(value)
    return dt.isoformat() if dt else None


def format_sort_key(epoch_seconds: int | None) -> str:
    """Zero-padded sort key so string order matches time order."""
    if epoch_seconds is None:
        return NEVER_DUE_SORT_KEY
    return f"{int(epoch_seconds):012d}"


def _dynamo_safe(value: Any) -> Any:
    """DynamoDB rejects floats; convert them (recursively) to Decimal."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _dynamo_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_dynamo_safe(v) for v in value]
    return value


# =====================================================
# Access Codes
# =====================================================


class AccessCode(BaseModel):
    """
    Single-factor portal credential.

    PK: CODE#<code>
    SK: METADATA
    """

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., pattern=ACCESS_CODE_PATTERN, description="Upper-case access code")
    supplier_id: str = Field(..., description="Supplier the code authenticates")
    assistance_id: str | None = Field(default=None, description="Work order the code is scoped to")
    expires_at: int = Field(..., description="Unix epoch after which the code is unusable")
    created_at: int = Field(..., description="Unix epoch timestamp")
    last_used_at: int | None = Field(default=None, description="Last successful validation")
    access_count: int = Field(default=0, ge=0, description="Successful validations so far")

    @model_validator(mode="after")
    def _check_expiry(self) -> "AccessCode":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self

    @property
    def pk(self) -> str:
        return f"CODE#{self.code}"

    @property
    def sk(self) -> str:
        return "METADATA"

    @property
    def code_prefix(self) -> str:
        return mask_code(self.code)

    def is_expired(self, now: int) -> bool:
        """Expiry is exclusive: at expires_at the code is already dead."""
        return now >= self.expires_at

    def to_dynamodb(self) -> dict[str, Any]:
        """Convert to DynamoDB item."""
        item: dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "code": self.code,
            "supplier_id": self.supplier_id,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "access_count": self.access_count,
        }
        if self.assistance_id:
            item["assistance_id"] = self.assistance_id
        if self.last_used_at is not None:
            item["last_used_at"] = self.last_used_at
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "AccessCode":
        """Parse from DynamoDB item."""
        return cls(
            code=item.get("code", ""),
            supplier_id=item.get("supplier_id", ""),
            assistance_id=item.get("assistance_id"),
            expires_at=item.get("expires_at", 0),
            created_at=item.get("created_at", 0),
            last_used_at=item.get("last_used_at"),
            access_count=item.get("access_count", 0),
        )


@dataclass(frozen=True)
class ActiveCodeKey:
    """
    Pointer to the reusable code of a (supplier, assistance) pair.

    Written in the same transaction as the code it references.
    """

    supplier_id: str
    assistance_id: str | None = None

    @property
    def pk(self) -> str:
        return f"SUPPLIER#{self.supplier_id}"

    @property
    def sk(self) -> str:
        return f"ACTIVE_CODE#{self.assistance_id or 'NONE'}"

    def to_key(self) -> dict[str, str]:
        return {"PK": self.pk, "SK": self.sk}

    def to_item(self, code: AccessCode) -> dict[str, Any]:
        item: dict[str, Any] = {
            **self.to_key(),
            "supplier_id": self.supplier_id,
            "code": code.code,
            "expires_at": code.expires_at,
            "created_at": code.created_at,
        }
        if self.assistance_id:
            item["assistance_id"] = self.assistance_id
        return item


def mask_code(code: str) -> str:
    """Loggable form of a secret code: first four characters only."""
    return f"{code[:4]}***"


# =====================================================
# Follow-Up Schedules
# =====================================================


def follow_up_index_keys(
    status: FollowUpStatus,
    *,
    attempt_count: int,
    max_attempts: int,
    scheduled_for: int,
    next_attempt_at: int | None = None,
    claimed_at: int | None = None,
) -> dict[str, str]:
    """
    GSI1 keys for a schedule.

    The sort key is the moment the row next needs attention: scheduled_for
    for pending rows, next_attempt_at for retryable failures, claimed_at for
    in-flight claims. Everything else sorts as never due.
    """
    due: int | None = None
    if status == FollowUpStatus.PROCESSING:
        due = claimed_at
    elif is_retryable(status, attempt_count, max_attempts):
        due = scheduled_for if status == FollowUpStatus.PENDING else next_attempt_at
    return {
        "GSI1PK": f"FOLLOWUP#{status.value}",
        "GSI1SK": format_sort_key(due),
    }


class FollowUpSchedule(BaseModel):
    """
    Reminder scheduled for a supplier on an assistance.

    PK: FOLLOWUP#<follow_up_id>
    SK: METADATA
    """

    model_config = ConfigDict(frozen=True)

    follow_up_id: str = Field(default_factory=lambda: uuid4().hex, description="Schedule identifier")
    assistance_id: str = Field(..., description="Assistance (work order) identifier")
    supplier_id: str = Field(..., description="Supplier identifier")
    follow_up_type: FollowUpType = Field(..., description="Reminder kind")
    priority: FollowUpPriority = Field(default=FollowUpPriority.NORMAL, description="Urgency")
    scheduled_for: int = Field(..., description="Unix epoch when the reminder becomes due")
    sent_at: int | None = Field(default=None, description="Unix epoch of successful dispatch")
    status: FollowUpStatus = Field(default=FollowUpStatus.PENDING, description="Delivery status")
    attempt_count: int = Field(default=0, ge=0, description="Dispatch attempts so far")
    max_attempts: int = Field(default=3, ge=1, description="Attempt ceiling")
    next_attempt_at: int | None = Field(default=None, description="Retry eligibility after a failure")
    metadata: FollowUpMetadata = Field(..., description="Type-specific reminder data")
    claimed_at: int | None = Field(default=None, description="When a processor run claimed the row")
    last_error: str | None = Field(default=None, description="Error of the most recent failed attempt")
    created_at: int | None = Field(default=None, description="Record creation timestamp")
    updated_at: int | None = Field(default=None, description="Last update timestamp")

    @model_validator(mode="after")
    def _check_consistency(self) -> "FollowUpSchedule":
        if self.metadata.follow_up_type != self.follow_up_type.value:
            raise ValueError(
                f"metadata is for '{self.metadata.follow_up_type}', "
                f"schedule is '{self.follow_up_type.value}'"
            )
        if self.attempt_count > self.max_attempts:
            raise ValueError("attempt_count cannot exceed max_attempts")
        return self

    @property
    def pk(self) -> str:
        return f"FOLLOWUP#{self.follow_up_id}"

    @property
    def sk(self) -> str:
        return "METADATA"

    @property
    def index_keys(self) -> dict[str, str]:
        return follow_up_index_keys(
            self.status,
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            scheduled_for=self.scheduled_for,
            next_attempt_at=self.next_attempt_at,
            claimed_at=self.claimed_at,
        )

    def to_dynamodb(self) -> dict[str, Any]:
        """Convert to DynamoDB item."""
        item: dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "follow_up_id": self.follow_up_id,
            "assistance_id": self.assistance_id,
            "supplier_id": self.supplier_id,
            "follow_up_type": self.follow_up_type.value,
            "priority": self.priority.value,
            "scheduled_for": self.scheduled_for,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "metadata": self.metadata.model_dump(mode="json", exclude_none=True),
            **self.index_keys,
        }
        if self.sent_at is not None:
            item["sent_at"] = self.sent_at
        if self.next_attempt_at is not None:
            item["next_attempt_at"] = self.next_attempt_at
        if self.claimed_at is not None:
            item["claimed_at"] = self.claimed_at
        if self.last_error:
            item["last_error"] = self.last_error
        if self.created_at is not None:
            item["created_at"] = self.created_at
        if self.updated_at is not None:
            item["updated_at"] = self.updated_at
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "FollowUpSchedule":
        """
        Create FollowUpSchedule from DynamoDB item.

        Raises:
            InvalidFollowUpTypeError: If the stored type is not one of the four kinds
            ValueError: If the stored metadata does not fit the type
        """
        follow_up_type = FollowUpType.from_string(item.get("follow_up_type", ""))
        return cls(
            follow_up_id=item.get("follow_up_id") or item.get("PK", "").replace("FOLLOWUP#", ""),
            assistance_id=item.get("assistance_id", ""),
            supplier_id=item.get("supplier_id", ""),
            follow_up_type=follow_up_type,
            priority=FollowUpPriority(item.get("priority", "normal")),
            scheduled_for=item.get("scheduled_for", 0),
            sent_at=item.get("sent_at"),
            status=FollowUpStatus.from_string(item.get("status", "pending")),
            attempt_count=item.get("attempt_count", 0),
            max_attempts=item.get("max_attempts", 3),
            next_attempt_at=item.get("next_attempt_at"),
            metadata=parse_metadata(follow_up_type, item.get("metadata") or {}),
            claimed_at=item.get("claimed_at"),
            last_error=item.get("last_error"),
            created_at=item.get("created_at"),
            updated_at=item.get("updated_at"),
        )


@dataclass(frozen=True)
class FollowUpKey:
    """DynamoDB key for a follow-up schedule."""

    follow_up_id: str

    @property
    def pk(self) -> str:
        return f"FOLLOWUP#{self.follow_up_id}"

    @property
    def sk(self) -> str:
        return "METADATA"

    def to_key(self) -> dict[str, str]:
        """Return DynamoDB key dict."""
        return {"PK": self.pk, "SK": self.sk}


# =====================================================
# Audit Events
# =====================================================


class AuditSeverity(str, Enum):
    """Severity of a security or lifecycle event."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    Append-only security/lifecycle record.

    PK: AUDIT#<yyyy-mm-dd>
    SK: EVT#<created_at_ms>#<event_id>
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid4().hex, description="Event identifier")
    event_type: str = Field(..., description="Action, e.g. login, magic_code_invalid")
    severity: AuditSeverity = Field(default=AuditSeverity.LOW, description="Severity")
    success: bool | None = Field(default=None, description="Outcome of the audited action")
    actor_ref: str | None = Field(default=None, description="Supplier or operator reference")
    ip_address: str | None = Field(default=None, description="Network origin")
    user_agent: str | None = Field(default=None, description="Client user agent")
    assistance_id: str | None = Field(default=None, description="Related assistance")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Event details (no secrets)")
    created_at_ms: int = Field(
        default_factory=lambda: int(utc_now().timestamp() * 1000),
        description="Millisecond timestamp for ordering",
    )

    @property
    def day(self) -> str:
        return datetime.fromtimestamp(self.created_at_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")

    @property
    def pk(self) -> str:
        return f"AUDIT#{self.day}"

    @property
    def sk(self) -> str:
        return f"EVT#{self.created_at_ms:015d}#{self.event_id}"

    @property
    def created_at(self) -> str:
        return datetime.fromtimestamp(self.created_at_ms / 1000, tz=timezone.utc).isoformat()

    def to_dynamodb(self) -> dict[str, Any]:
        """Convert to DynamoDB item."""
        item: dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "metadata": _dynamo_safe(self.metadata),
            "created_at_ms": self.created_at_ms,
        }
        optional = {
            "success": self.success,
            "actor_ref": self.actor_ref,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "assistance_id": self.assistance_id,
        }
        item.update({k: v for k, v in optional.items() if v is not None})
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "AuditEvent":
        """Parse from DynamoDB item."""
        return cls(
            event_id=item.get("event_id", ""),
            event_type=item.get("event_type", ""),
            severity=AuditSeverity(item.get("severity", "low")),
            success=item.get("success"),
            actor_ref=item.get("actor_ref"),
            ip_address=item.get("ip_address"),
            user_agent=item.get("user_agent"),
            assistance_id=item.get("assistance_id"),
            metadata=item.get("metadata", {}),
            created_at_ms=item.get("created_at_ms", 0),
        )


__all__ = [
    "ACCESS_CODE_PATTERN",
    "NEVER_DUE_SORT_KEY",
    "AccessCode",
    "ActiveCodeKey",
    "AuditEvent",
    "AuditSeverity",
    "CompletionReminderMetadata",
    "DateConfirmationMetadata",
    "FollowUpKey",
    "FollowUpSchedule",
    "QuotationReminderMetadata",
    "WorkReminderMetadata",
    "follow_up_index_keys",
    "format_sort_key",
    "from_epoch",
    "isoformat_epoch",
    "mask_code",
    "to_epoch",
    "utc_now",
]
