"""
Follow-Up Processor

Periodic batch job that delivers due reminders.

Flow:
1. Recover processing claims older than the claim timeout
2. Select due pending rows and retryable failed rows from GSI1
3. Claim each row with a conditional update (lost claims are skipped)
4. Join directory records, obtain a portal code, render and dispatch
5. Record sent/failed (with backoff) conditioned on the claim still holding
6. Audit every outcome

Only the conditional claim protects a row from concurrent runs, so two
overlapping invocations never deliver the same reminder twice.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
import structlog

from maintenance.credentials.codes import build_portal_url, get_or_issue
from maintenance.followups.templates import ReminderContext, RenderedReminder, render_reminder
from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import DispatchError, PersistenceError
from maintenance.shared.models.dynamo import (
    NEVER_DUE_SORT_KEY,
    AuditSeverity,
    FollowUpKey,
    FollowUpSchedule,
    follow_up_index_keys,
    format_sort_key,
    to_epoch,
)
from maintenance.shared.state_machine import FollowUpStatus, validate_transition
from maintenance.shared.tools.audit import record_audit_event
from maintenance.shared.tools.directory import load_assistance, load_building, load_supplier
from maintenance.shared.tools.dynamodb import get_table, is_conditional_failure, query_all
from maintenance.shared.tools.email import NotificationDispatcher

log = structlog.get_logger()

MAX_ERROR_LENGTH = 500


@dataclass
class ProcessingResult:
    """Summary of one processor invocation."""

    success: bool = True
    processed: int = 0
    errors: int = 0
    total: int = 0
    skipped: int = 0
    recovered: int = 0
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "processed": self.processed,
            "errors": self.errors,
            "total": self.total,
        }
        if self.error:
            body["error"] = self.error
        return body


@dataclass(frozen=True)
class DueFollowUp:
    """A selected row as observed at selection time."""

    follow_up_id: str
    status: FollowUpStatus
    attempt_count: int
    max_attempts: int
    scheduled_for: int
    due_at: str
    item: dict[str, Any]

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "DueFollowUp":
        return cls(
            follow_up_id=item["follow_up_id"],
            status=FollowUpStatus.from_string(item["status"]),
            attempt_count=int(item.get("attempt_count", 0)),
            max_attempts=int(item.get("max_attempts", 3)),
            scheduled_for=int(item.get("scheduled_for", 0)),
            due_at=item.get("GSI1SK", NEVER_DUE_SORT_KEY),
            item=item,
        )

    @property
    def supplier_id(self) -> str | None:
        return self.item.get("supplier_id")

    @property
    def assistance_id(self) -> str | None:
        return self.item.get("assistance_id")


def _due_query(status: FollowUpStatus, until: int, limit: int | None = None) -> list[DueFollowUp]:
    settings = get_settings()
    params: dict[str, Any] = {
        "IndexName": settings.dynamodb_gsi1_name,
        "KeyConditionExpression": "GSI1PK = :gsi1pk AND GSI1SK <= :until",
        "ExpressionAttributeValues": {
            ":gsi1pk": f"FOLLOWUP#{status.value}",
            ":until": format_sort_key(until),
        },
    }
    if limit:
        params["Limit"] = limit
    return [DueFollowUp.from_item(item) for item in query_all(**params)]


def select_due_follow_ups(now: int, batch_size: int) -> list[DueFollowUp]:
    """
    Due pending rows and retryable failed rows, oldest first, at most batch_size.

    Raises:
        PersistenceError: On query failure
    """
    candidates = _due_query(FollowUpStatus.PENDING, now, batch_size)
    candidates += _due_query(FollowUpStatus.FAILED, now, batch_size)
    candidates.sort(key=lambda due: (due.due_at, due.follow_up_id))
    return candidates[:batch_size]


def claim_follow_up(due: DueFollowUp, now: int) -> bool:
    """
    Move a row to processing if it is still as observed.

    Returns:
        True when this run owns the row, False if another writer got there first

    Raises:
        PersistenceError: On DynamoDB failure other than a failed condition
    """
    if not validate_transition(due.status, FollowUpStatus.PROCESSING, raise_on_invalid=False):
        return False

    condition = (
        "#status = :observed AND #attempt_count = :attempts AND #attempt_count < :max_attempts"
    )
    values: dict[str, Any] = {
        ":processing": FollowUpStatus.PROCESSING.value,
        ":observed": due.status.value,
        ":attempts": due.attempt_count,
        ":max_attempts": due.max_attempts,
        ":now": now,
        ":gsi1pk": f"FOLLOWUP#{FollowUpStatus.PROCESSING.value}",
        ":gsi1sk": format_sort_key(now),
    }
    names = {
        "#status": "status",
        "#attempt_count": "attempt_count",
        "#claimed_at": "claimed_at",
        "#updated_at": "updated_at",
        "#gsi1pk": "GSI1PK",
        "#gsi1sk": "GSI1SK",
    }
    if due.status == FollowUpStatus.FAILED:
        condition += " AND #next_attempt_at <= :now"
        names["#next_attempt_at"] = "next_attempt_at"

    try:
        get_table().update_item(
            Key=FollowUpKey(due.follow_up_id).to_key(),
            UpdateExpression=(
                "SET #status = :processing, #claimed_at = :now, #updated_at = :now, "
                "#gsi1pk = :gsi1pk, #gsi1sk = :gsi1sk"
            ),
            ConditionExpression=condition,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as e:
        if is_conditional_failure(e):
            log.info("follow_up_claim_lost", follow_up_id=due.follow_up_id)
            return False
        raise PersistenceError(
            operation="update",
            table_name=get_settings().dynamodb_table_name,
            error_message=str(e),
        ) from e
    except BotoCoreError as e:
        raise PersistenceError(
            operation="update",
            table_name=get_settings().dynamodb_table_name,
            error_message=str(e),
        ) from e

    log.debug("follow_up_claimed", follow_up_id=due.follow_up_id, attempt=due.attempt_count + 1)
    return True


def record_outcome(
    due: DueFollowUp,
    claimed_at: int,
    now: int,
    *,
    error: str | None = None,
) -> bool:
    """
    Record the result of a claimed attempt.

    Success marks the row sent. Failure marks it failed and, while
    attempts remain, eligible again after the retry backoff. Either way
    attempt_count goes up by one.

    Returns:
        False if the claim no longer holds (cancelled or recovered meanwhile)
    """
    settings = get_settings()
    attempt_count = due.attempt_count + 1
    names = {
        "#status": "status",
        "#attempt_count": "attempt_count",
        "#updated_at": "updated_at",
        "#claimed_at": "claimed_at",
        "#gsi1pk": "GSI1PK",
        "#gsi1sk": "GSI1SK",
        "#next_attempt_at": "next_attempt_at",
        "#last_error": "last_error",
    }
    values: dict[str, Any] = {
        ":processing": FollowUpStatus.PROCESSING.value,
        ":observed": due.attempt_count,
        ":claimed_at": claimed_at,
        ":attempts": attempt_count,
        ":now": now,
    }
    remove = ["#claimed_at"]
    next_attempt_at: int | None = None

    if error is None:
        new_status = FollowUpStatus.SENT
        sets = ["#sent_at = :now"]
        names["#sent_at"] = "sent_at"
        remove += ["#next_attempt_at", "#last_error"]
    else:
        new_status = FollowUpStatus.FAILED
        if attempt_count < due.max_attempts:
            next_attempt_at = now + settings.followup_retry_backoff_hours * 3600
        sets = ["#last_error = :last_error"]
        values[":last_error"] = error[:MAX_ERROR_LENGTH]
        if next_attempt_at is None:
            remove.append("#next_attempt_at")
        else:
            sets.append("#next_attempt_at = :next_attempt_at")
            values[":next_attempt_at"] = next_attempt_at

    index_keys = follow_up_index_keys(
        new_status,
        attempt_count=attempt_count,
        max_attempts=due.max_attempts,
        scheduled_for=due.scheduled_for,
        next_attempt_at=next_attempt_at,
    )
    values[":new_status"] = new_status.value
    values[":gsi1pk"] = index_keys["GSI1PK"]
    values[":gsi1sk"] = index_keys["GSI1SK"]
    sets = [
        "#status = :new_status",
        "#attempt_count = :attempts",
        "#updated_at = :now",
        "#gsi1pk = :gsi1pk",
        "#gsi1sk = :gsi1sk",
        *sets,
    ]

    try:
        get_table().update_item(
            Key=FollowUpKey(due.follow_up_id).to_key(),
            UpdateExpression=f"SET {', '.join(sets)} REMOVE {', '.join(remove)}",
            ConditionExpression=(
                "#status = :processing AND #attempt_count = :observed AND #claimed_at = :claimed_at"
            ),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as e:
        if is_conditional_failure(e):
            log.warning(
                "follow_up_outcome_lost",
                follow_up_id=due.follow_up_id,
                outcome=new_status.value,
            )
            return False
        raise PersistenceError(
            operation="update",
            table_name=settings.dynamodb_table_name,
            error_message=str(e),
        ) from e
    except BotoCoreError as e:
        raise PersistenceError(
            operation="update",
            table_name=settings.dynamodb_table_name,
            error_message=str(e),
        ) from e

    log.info(
        "follow_up_outcome_recorded",
        follow_up_id=due.follow_up_id,
        status=new_status.value,
        attempt_count=attempt_count,
        next_attempt_at=next_attempt_at,
    )
    record_audit_event(
        "follow_up_sent" if error is None else "follow_up_failed",
        severity=AuditSeverity.LOW if error is None else AuditSeverity.MEDIUM,
        success=error is None,
        actor_ref=due.supplier_id,
        assistance_id=due.assistance_id,
        metadata={
            "follow_up_id": due.follow_up_id,
            "follow_up_type": due.item.get("follow_up_type"),
            "attempt_count": attempt_count,
            "next_attempt_at": next_attempt_at,
            "error": error[:MAX_ERROR_LENGTH] if error else None,
        },
    )
    return True


def recover_stale_claims(now: int) -> int:
    """
    Fail processing rows whose claim is older than the claim timeout.

    A crashed run leaves its rows in processing; recording them as a
    failed attempt puts them back on the retry path.

    Raises:
        PersistenceError: On query failure
    """
    settings = get_settings()
    cutoff = now - settings.followup_claim_timeout_minutes * 60
    recovered = 0
    for due in _due_query(FollowUpStatus.PROCESSING, cutoff):
        claimed_at = due.item.get("claimed_at")
        if claimed_at is None:
            continue
        try:
            if record_outcome(due, int(claimed_at), now, error="claim expired before an outcome was recorded"):
                recovered += 1
        except PersistenceError as e:
            log.error("stale_claim_recovery_failed", follow_up_id=due.follow_up_id, error=str(e))
    if recovered:
        log.warning("stale_claims_recovered", count=recovered)
    return recovered


def prepare_reminder(schedule: FollowUpSchedule, now: int) -> tuple[str, RenderedReminder]:
    """
    Join directory data, obtain a portal code and render the reminder.

    Returns:
        (recipient email, rendered reminder)

    Raises:
        DispatchError: If required directory data is missing
        PersistenceError: On DynamoDB failure
    """
    settings = get_settings()
    assistance = load_assistance(schedule.assistance_id)
    if assistance is None:
        raise DispatchError(f"Assistance {schedule.assistance_id} not found")
    supplier = load_supplier(schedule.supplier_id)
    if supplier is None or not supplier.email:
        raise DispatchError(f"Supplier {schedule.supplier_id} has no email address")
    building = load_building(assistance.building_id) if assistance.building_id else None

    code = get_or_issue(
        schedule.supplier_id,
        schedule.assistance_id,
        timedelta(days=settings.reminder_code_ttl_days),
        now=now,
    )
    rendered = render_reminder(
        ReminderContext(
            schedule=schedule,
            assistance=assistance,
            building=building,
            supplier=supplier,
            magic_code=code.code,
            portal_url=build_portal_url(code.code),
            now=now,
        )
    )
    return supplier.email, rendered


def _dispatch(due: DueFollowUp, dispatcher: NotificationDispatcher, now: int) -> None:
    """Raises on any failure; the caller turns it into a failed attempt."""
    schedule = FollowUpSchedule.from_dynamodb(due.item)
    recipient, rendered = prepare_reminder(schedule, now)
    result = dispatcher.send(recipient, rendered.subject, rendered.template, rendered.data)
    if not result.ok:
        raise DispatchError(
            result.error or "dispatcher rejected the message",
            template=rendered.template,
            recipient=recipient,
        )
    log.info(
        "follow_up_dispatched",
        follow_up_id=due.follow_up_id,
        template=rendered.template,
        message_id=result.message_id,
    )


def process_follow_ups(
    dispatcher: NotificationDispatcher,
    now: datetime | int | None = None,
    batch_size: int | None = None,
) -> ProcessingResult:
    """
    Deliver one batch of due reminders.

    Args:
        dispatcher: Notification dispatcher used for every reminder
        now: Override current time (datetime or epoch)
        batch_size: Maximum rows to handle (default from settings)

    Returns:
        ProcessingResult; success is False only when selection failed
    """
    settings = get_settings()
    if now is None:
        current = int(time.time())
    elif isinstance(now, datetime):
        current = to_epoch(now)
    else:
        current = int(now)
    batch_size = batch_size or settings.followup_batch_size
    result = ProcessingResult()

    try:
        result.recovered = recover_stale_claims(current)
        selected = select_due_follow_ups(current, batch_size)
    except PersistenceError as e:
        log.error("follow_up_selection_failed", error=str(e))
        result.success = False
        result.error = e.message
        return result

    result.total = len(selected)
    log.info("follow_ups_selected", count=result.total, batch_size=batch_size)

    for due in selected:
        bound_log = log.bind(follow_up_id=due.follow_up_id)
        try:
            if not claim_follow_up(due, current):
                result.skipped += 1
                continue
        except PersistenceError as e:
            bound_log.error("follow_up_claim_failed", error=str(e))
            result.errors += 1
            continue

        error: str | None = None
        try:
            _dispatch(due, dispatcher, current)
        except Exception as e:
            error = str(e)
            bound_log.warning("follow_up_dispatch_failed", error=error, error_type=type(e).__name__)

        try:
            recorded = record_outcome(due, current, current, error=error)
        except PersistenceError as e:
            bound_log.error("follow_up_record_failed", error=str(e))
            result.errors += 1
            continue

        if not recorded:
            result.skipped += 1
        elif error is None:
            result.processed += 1
        else:
            result.errors += 1

    log.info(
        "follow_up_processing_complete",
        processed=result.processed,
        errors=result.errors,
        total=result.total,
        skipped=result.skipped,
        recovered=result.recovered,
    )
    return result
