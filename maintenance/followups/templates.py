"""
Reminder Templates

Maps each follow-up type to its notification template, subject line and
payload. The dispatcher renders the final email from the payload.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

from maintenance.shared.exceptions import DispatchError
from maintenance.shared.models.directory import Assistance, Building, Supplier
from maintenance.shared.models.dynamo import FollowUpSchedule
from maintenance.shared.models.follow_up import (
    CompletionReminderMetadata,
    DateConfirmationMetadata,
    FollowUpPriority,
    FollowUpType,
    QuotationReminderMetadata,
    WorkReminderMetadata,
)


@dataclass(frozen=True)
class ReminderContext:
    """Everything a template needs about one reminder."""

    schedule: FollowUpSchedule
    assistance: Assistance
    building: Building | None
    supplier: Supplier
    magic_code: str
    portal_url: str
    now: int

    @property
    def today(self) -> date:
        return datetime.fromtimestamp(self.now, tz=timezone.utc).date()

    @property
    def reminder_number(self) -> int:
        return self.schedule.attempt_count + 1


@dataclass(frozen=True)
class RenderedReminder:
    template: str
    subject: str
    data: dict[str, Any]


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _base_payload(ctx: ReminderContext) -> dict[str, Any]:
    assistance = ctx.assistance
    return {
        "supplierName": ctx.supplier.name,
        "magicCode": ctx.magic_code,
        "portalUrl": ctx.portal_url,
        "reminderNumber": ctx.reminder_number,
        "priority": ctx.schedule.priority.value,
        "isUrgent": ctx.schedule.priority in (FollowUpPriority.URGENT, FollowUpPriority.CRITICAL),
        "notes": ctx.schedule.metadata.notes,
        "assistanceDetails": {
            "id": assistance.assistance_id,
            "title": assistance.title,
            "description": assistance.description,
            "priority": assistance.priority.value,
            "buildingName": ctx.building.name if ctx.building else None,
            "buildingAddress": ctx.building.address if ctx.building else None,
        },
    }


def _subject(ctx: ReminderContext, label: str) -> str:
    prefix = f"Reminder {ctx.reminder_number}: " if ctx.reminder_number > 1 else ""
    return f"{prefix}{label} - {ctx.assistance.title}"


def _quotation_reminder(ctx: ReminderContext) -> RenderedReminder:
    metadata: QuotationReminderMetadata = ctx.schedule.metadata
    deadline = metadata.quotation_deadline or ctx.assistance.quotation_deadline
    data = _base_payload(ctx)
    data["quotationDeadline"] = _iso(deadline)
    return RenderedReminder("quotation_reminder", _subject(ctx, "Quotation requested"), data)


def _date_confirmation(ctx: ReminderContext) -> RenderedReminder:
    metadata: DateConfirmationMetadata = ctx.schedule.metadata
    proposed = metadata.proposed_start_date or ctx.assistance.scheduled_start_date
    data = _base_payload(ctx)
    data["proposedStartDate"] = _iso(proposed)
    return RenderedReminder("date_confirmation", _subject(ctx, "Please confirm the start date"), data)


def _work_reminder(ctx: ReminderContext) -> RenderedReminder:
    metadata: WorkReminderMetadata = ctx.schedule.metadata
    data = _base_payload(ctx)
    data["workDate"] = metadata.work_date.isoformat()
    data["daysUntilWork"] = (metadata.work_date - ctx.today).days
    return RenderedReminder("work_reminder", _subject(ctx, "Upcoming work"), data)


def _completion_reminder(ctx: ReminderContext) -> RenderedReminder:
    metadata: CompletionReminderMetadata = ctx.schedule.metadata
    days_overdue = max((ctx.today - metadata.expected_completion).days, 0)
    data = _base_payload(ctx)
    data["expectedCompletion"] = metadata.expected_completion.isoformat()
    data["daysOverdue"] = days_overdue
    data["isOverdue"] = days_overdue > 0
    label = "Completion reminder"
    if days_overdue:
        label = f"{label} ({days_overdue} days overdue)"
    return RenderedReminder("completion_reminder", _subject(ctx, label), data)


TEMPLATE_BUILDERS: dict[FollowUpType, Callable[[ReminderContext], RenderedReminder]] = {
    FollowUpType.QUOTATION_REMINDER: _quotation_reminder,
    FollowUpType.DATE_CONFIRMATION: _date_confirmation,
    FollowUpType.WORK_REMINDER: _work_reminder,
    FollowUpType.COMPLETION_REMINDER: _completion_reminder,
}


def render_reminder(ctx: ReminderContext) -> RenderedReminder:
    """
    Build the template name, subject and payload for a reminder.

    Raises:
        DispatchError: If the follow-up type has no template
    """
    builder = TEMPLATE_BUILDERS.get(ctx.schedule.follow_up_type)
    if builder is None:
        raise DispatchError(
            f"No template for follow-up type '{ctx.schedule.follow_up_type}'",
            recipient=ctx.supplier.email,
        )
    return builder(ctx)
