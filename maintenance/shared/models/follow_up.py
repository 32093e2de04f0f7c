"""
Follow-Up Models

Enums and the per-type metadata carried by follow-up schedules.
Metadata is a tagged union keyed by follow_up_type: each reminder kind
carries only the fields its template needs.
"""

from datetime import date
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from maintenance.shared.exceptions import InvalidFollowUpTypeError


class FollowUpType(str, Enum):
    """Lifecycle milestone a reminder re-engages the supplier about."""

    QUOTATION_REMINDER = "quotation_reminder"
    DATE_CONFIRMATION = "date_confirmation"
    WORK_REMINDER = "work_reminder"
    COMPLETION_REMINDER = "completion_reminder"

    @classmethod
    def from_string(cls, value: str) -> "FollowUpType":
        """Convert string to FollowUpType, raising InvalidFollowUpTypeError."""
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError) as e:
            raise InvalidFollowUpTypeError(
                str(value), valid_types=[t.value for t in cls]
            ) from e


class FollowUpPriority(str, Enum):
    """Urgency of the underlying assistance."""

    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"


class _MetadataBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    notes: str | None = Field(default=None, max_length=2000, description="Operator notes")


class QuotationReminderMetadata(_MetadataBase):
    """Supplier has not submitted a quotation yet."""

    follow_up_type: Literal["quotation_reminder"] = "quotation_reminder"
    quotation_deadline: date | None = Field(default=None, description="Quotation due date")


class DateConfirmationMetadata(_MetadataBase):
    """Supplier has not confirmed a start date."""

    follow_up_type: Literal["date_confirmation"] = "date_confirmation"
    proposed_start_date: date | None = Field(default=None, description="Date awaiting confirmation")


class WorkReminderMetadata(_MetadataBase):
    """Scheduled work date is approaching."""

    follow_up_type: Literal["work_reminder"] = "work_reminder"
    work_date: date = Field(..., description="Date the work is scheduled for")


class CompletionReminderMetadata(_MetadataBase):
    """Work completion is overdue."""

    follow_up_type: Literal["completion_reminder"] = "completion_reminder"
    expected_completion: date = Field(..., description="Date the work was expected to finish")


FollowUpMetadata = Annotated[
    Union[
        QuotationReminderMetadata,
        DateConfirmationMetadata,
        WorkReminderMetadata,
        CompletionReminderMetadata,
    ],
    Field(discriminator="follow_up_type"),
]

_metadata_adapter: TypeAdapter[Any] = TypeAdapter(FollowUpMetadata)


def parse_metadata(
    follow_up_type: FollowUpType | str,
    data: dict[str, Any] | BaseModel | None,
) -> QuotationReminderMetadata | DateConfirmationMetadata | WorkReminderMetadata | CompletionReminderMetadata:
    """
    Build the metadata variant for a follow-up type.

    Args:
        follow_up_type: Type the metadata must belong to
        data: Raw metadata dict (tag optional) or an already-built variant

    Returns:
        Validated metadata variant

    Raises:
        InvalidFollowUpTypeError: If the type is unknown
        ValueError: If required fields are missing or the tag disagrees
            (pydantic.ValidationError is a ValueError)
    """
    if isinstance(follow_up_type, str) and not isinstance(follow_up_type, FollowUpType):
        follow_up_type = FollowUpType.from_string(follow_up_type)

    if isinstance(data, BaseModel):
        data = data.model_dump()
    payload = dict(data or {})
    payload.setdefault("follow_up_type", follow_up_type.value)
    metadata = _metadata_adapter.validate_python(payload)
    if metadata.follow_up_type != follow_up_type.value:
        raise ValueError(
            f"Metadata for '{metadata.follow_up_type}' cannot be attached "
            f"to a '{follow_up_type.value}' follow-up"
        )
    return metadata
