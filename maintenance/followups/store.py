"""
Follow-Up Store

Persistence and operator-facing lifecycle operations for follow-up
schedules: create, cancel, reschedule, plus read, list and statistics
queries. The processor owns the pending -> processing -> sent|failed
transitions (see processor.py).
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
import structlog

from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import (
    ConditionalWriteError,
    FollowUpNotFoundError,
    InvalidStateTransitionError,
    PersistenceError,
)
from maintenance.shared.models.dynamo import (
    NEVER_DUE_SORT_KEY,
    FollowUpKey,
    FollowUpSchedule,
    follow_up_index_keys,
    to_epoch,
)
from maintenance.shared.models.follow_up import FollowUpPriority, FollowUpType, parse_metadata
from maintenance.shared.state_machine import (
    VALID_TRANSITIONS,
    FollowUpStatus,
    validate_transition,
)
from maintenance.shared.tools.dynamodb import get_item, get_table, is_conditional_failure, query_all

log = structlog.get_logger()


def _as_epoch(value: datetime | int) -> int:
    if isinstance(value, datetime):
        return to_epoch(value)
    return int(value)


def _persistence_error(operation: str, error: Exception) -> PersistenceError:
    return PersistenceError(
        operation=operation,
        table_name=get_settings().dynamodb_table_name,
        error_message=str(error),
    )


def load_follow_up(follow_up_id: str, *, consistent_read: bool = True) -> FollowUpSchedule | None:
    """
    Load a follow-up schedule.

    Returns:
        FollowUpSchedule if found, None otherwise

    Raises:
        PersistenceError: On DynamoDB operation failure
    """
    item = get_item(FollowUpKey(follow_up_id).to_key(), consistent_read=consistent_read)
    if not item:
        log.debug("follow_up_not_found", follow_up_id=follow_up_id)
        return None
    return FollowUpSchedule.from_dynamodb(item)


def create_follow_up(
    follow_up_type: FollowUpType | str,
    assistance_id: str,
    supplier_id: str,
    scheduled_for: datetime | int,
    priority: FollowUpPriority | str = FollowUpPriority.NORMAL,
    metadata: dict[str, Any] | None = None,
    *,
    max_attempts: int | None = None,
    now: int | None = None,
) -> FollowUpSchedule:
    """
    Create a pending follow-up schedule.

    Backdated schedules are accepted and become due on the next processor run.

    Args:
        follow_up_type: One of the four reminder kinds
        assistance_id: Assistance the reminder is about
        supplier_id: Supplier to remind
        scheduled_for: When the reminder becomes due (datetime or epoch)
        priority: normal, urgent or critical
        metadata: Type-specific fields (see models/follow_up.py)
        max_attempts: Attempt ceiling (default from settings)
        now: Override creation time

    Returns:
        The persisted FollowUpSchedule

    Raises:
        InvalidFollowUpTypeError: If the type is not supported
        ValueError: If priority or metadata are invalid
        PersistenceError: On DynamoDB failure
    """
    settings = get_settings()
    if not isinstance(follow_up_type, FollowUpType):
        follow_up_type = FollowUpType.from_string(follow_up_type)
    if not isinstance(priority, FollowUpPriority):
        priority = FollowUpPriority(str(priority).strip().lower())

    created_at = now if now is not None else int(time.time())
    schedule = FollowUpSchedule(
        assistance_id=assistance_id,
        supplier_id=supplier_id,
        follow_up_type=follow_up_type,
        priority=priority,
        scheduled_for=_as_epoch(scheduled_for),
        max_attempts=max_attempts or settings.followup_max_attempts,
        metadata=parse_metadata(follow_up_type, metadata),
        created_at=created_at,
        updated_at=created_at,
    )

    try:
        get_table().put_item(
            Item=schedule.to_dynamodb(),
            ConditionExpression="attribute_not_exists(PK)",
        )
    except ClientError as e:
        if is_conditional_failure(e):
            raise ConditionalWriteError(
                table_name=settings.dynamodb_table_name,
                error_message=f"Follow-up {schedule.follow_up_id} already exists",
            ) from e
        log.error("follow_up_create_failed", assistance_id=assistance_id, error=str(e))
        raise _persistence_error("put", e) from e
    except BotoCoreError as e:
        raise _persistence_error("put", e) from e

    log.info(
        "follow_up_created",
        follow_up_id=schedule.follow_up_id,
        follow_up_type=follow_up_type.value,
        assistance_id=assistance_id,
        supplier_id=supplier_id,
        scheduled_for=schedule.scheduled_for,
    )
    return schedule


def cancel_follow_up(follow_up_id: str, *, now: int | None = None) -> FollowUpSchedule:
    """
    Cancel a schedule that has not been sent.

    An in-flight claim is cancelled too; the processor then fails to
    record its outcome and leaves the row cancelled.

    Raises:
        FollowUpNotFoundError: Unknown id
        InvalidStateTransitionError: The reminder was already sent
        PersistenceError: On DynamoDB failure
    """
    updated_at = now if now is not None else int(time.time())
    try:
        response = get_table().update_item(
            Key=FollowUpKey(follow_up_id).to_key(),
            UpdateExpression=(
                "SET #status = :cancelled, #gsi1pk = :gsi1pk, #gsi1sk = :never, "
                "#updated_at = :now REMOVE #claimed_at, #next_attempt_at"
            ),
            ConditionExpression="attribute_exists(PK) AND #status <> :sent",
            ExpressionAttributeNames={
                "#status": "status",
                "#gsi1pk": "GSI1PK",
                "#gsi1sk": "GSI1SK",
                "#updated_at": "updated_at",
                "#claimed_at": "claimed_at",
                "#next_attempt_at": "next_attempt_at",
            },
            ExpressionAttributeValues={
                ":cancelled": FollowUpStatus.CANCELLED.value,
                ":sent": FollowUpStatus.SENT.value,
                ":gsi1pk": f"FOLLOWUP#{FollowUpStatus.CANCELLED.value}",
                ":never": NEVER_DUE_SORT_KEY,
                ":now": updated_at,
            },
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if not is_conditional_failure(e):
            raise _persistence_error("update", e) from e
        current = load_follow_up(follow_up_id)
        if current is None:
            raise FollowUpNotFoundError(follow_up_id) from e
        raise InvalidStateTransitionError(
            current_status=current.status.value,
            new_status=FollowUpStatus.CANCELLED.value,
            allowed_transitions=sorted(s.value for s in VALID_TRANSITIONS[current.status]),
        ) from e
    except BotoCoreError as e:
        raise _persistence_error("update", e) from e

    log.info("follow_up_cancelled", follow_up_id=follow_up_id)
    return FollowUpSchedule.from_dynamodb(response["Attributes"])


def reschedule_follow_up(
    follow_up_id: str,
    new_date: datetime | int,
    *,
    now: int | None = None,
) -> FollowUpSchedule:
    """
    Move a schedule back to pending with a new due time.

    attempt_count is preserved. A schedule whose attempts are already
    exhausted is stored as pending but stays off the due index.

    Raises:
        FollowUpNotFoundError: Unknown id
        InvalidStateTransitionError: From sent or processing
        ConditionalWriteError: The row changed concurrently
        PersistenceError: On DynamoDB failure
    """
    settings = get_settings()
    current = load_follow_up(follow_up_id)
    if current is None:
        raise FollowUpNotFoundError(follow_up_id)
    if current.status != FollowUpStatus.PENDING:
        validate_transition(current.status, FollowUpStatus.PENDING)

    scheduled_for = _as_epoch(new_date)
    updated_at = now if now is not None else int(time.time())
    index_keys = follow_up_index_keys(
        FollowUpStatus.PENDING,
        attempt_count=current.attempt_count,
        max_attempts=current.max_attempts,
        scheduled_for=scheduled_for,
    )
    if index_keys["GSI1SK"] == NEVER_DUE_SORT_KEY:
        log.warning(
            "rescheduled_follow_up_exhausted",
            follow_up_id=follow_up_id,
            attempt_count=current.attempt_count,
            max_attempts=current.max_attempts,
        )

    try:
        response = get_table().update_item(
            Key=FollowUpKey(follow_up_id).to_key(),
            UpdateExpression=(
                "SET #status = :pending, #scheduled_for = :scheduled_for, "
                "#gsi1pk = :gsi1pk, #gsi1sk = :gsi1sk, #updated_at = :now "
                "REMOVE #claimed_at, #next_attempt_at"
            ),
            ConditionExpression="#status = :observed AND #attempt_count = :attempts",
            ExpressionAttributeNames={
                "#status": "status",
                "#scheduled_for": "scheduled_for",
                "#gsi1pk": "GSI1PK",
                "#gsi1sk": "GSI1SK",
                "#updated_at": "updated_at",
                "#claimed_at": "claimed_at",
                "#next_attempt_at": "next_attempt_at",
                "#attempt_count": "attempt_count",
            },
            ExpressionAttributeValues={
                ":pending": FollowUpStatus.PENDING.value,
                ":scheduled_for": scheduled_for,
                ":gsi1pk": index_keys["GSI1PK"],
                ":gsi1sk": index_keys["GSI1SK"],
                ":now": updated_at,
                ":observed": current.status.value,
                ":attempts": current.attempt_count,
            },
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if is_conditional_failure(e):
            log.warning("follow_up_reschedule_conflict", follow_up_id=follow_up_id)
            raise ConditionalWriteError(
                table_name=settings.dynamodb_table_name,
                error_message=f"Follow-up {follow_up_id} changed concurrently",
            ) from e
        raise _persistence_error("update", e) from e
    except BotoCoreError as e:
        raise _persistence_error("update", e) from e

    log.info(
        "follow_up_rescheduled",
        follow_up_id=follow_up_id,
        previous_status=current.status.value,
        scheduled_for=scheduled_for,
    )
    return FollowUpSchedule.from_dynamodb(response["Attributes"])


def _scan_follow_ups(**scan_params: Any) -> list[dict[str, Any]]:
    table = get_table()
    try:
        response = table.scan(**scan_params)
        items = response.get("Items", [])
        while "LastEvaluatedKey" in response:
            scan_params["ExclusiveStartKey"] = response["LastEvaluatedKey"]
            response = table.scan(**scan_params)
            items.extend(response.get("Items", []))
    except (ClientError, BotoCoreError) as e:
        log.error("dynamodb_scan_failed", error=str(e))
        raise _persistence_error("scan", e) from e
    return items


def list_follow_ups(
    *,
    status: FollowUpStatus | str | None = None,
    follow_up_type: FollowUpType | str | None = None,
    priority: FollowUpPriority | str | None = None,
) -> list[FollowUpSchedule]:
    """
    List schedules ordered by scheduled_for, optionally filtered.

    A status filter is served from GSI1; otherwise the table is scanned.
    """
    settings = get_settings()
    filters: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, Any] = {}

    if follow_up_type is not None:
        if not isinstance(follow_up_type, FollowUpType):
            follow_up_type = FollowUpType.from_string(follow_up_type)
        filters.append("#follow_up_type = :follow_up_type")
        names["#follow_up_type"] = "follow_up_type"
        values[":follow_up_type"] = follow_up_type.value
    if priority is not None:
        filters.append("#priority = :priority")
        names["#priority"] = "priority"
        values[":priority"] = FollowUpPriority(priority).value

    if status is not None:
        if not isinstance(status, FollowUpStatus):
            status = FollowUpStatus.from_string(status)
        params: dict[str, Any] = {
            "IndexName": settings.dynamodb_gsi1_name,
            "KeyConditionExpression": "GSI1PK = :gsi1pk",
            "ExpressionAttributeValues": {":gsi1pk": f"FOLLOWUP#{status.value}", **values},
        }
        if filters:
            params["FilterExpression"] = " AND ".join(filters)
            params["ExpressionAttributeNames"] = names
        items = query_all(**params)
    else:
        filters.insert(0, "begins_with(PK, :pk_prefix) AND SK = :sk")
        values.update({":pk_prefix": "FOLLOWUP#", ":sk": "METADATA"})
        params = {
            "FilterExpression": " AND ".join(filters),
            "ExpressionAttributeValues": values,
        }
        if names:
            params["ExpressionAttributeNames"] = names
        items = _scan_follow_ups(**params)

    schedules = [FollowUpSchedule.from_dynamodb(item) for item in items]
    return sorted(schedules, key=lambda s: s.scheduled_for)


@dataclass
class FollowUpStats:
    """Counts for the follow-up dashboard."""

    total: int = 0
    overdue: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.by_status.get(FollowUpStatus.PENDING.value, 0),
            "sent": self.by_status.get(FollowUpStatus.SENT.value, 0),
            "failed": self.by_status.get(FollowUpStatus.FAILED.value, 0),
            "overdue": self.overdue,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "by_priority": dict(self.by_priority),
        }


def get_follow_up_stats(now: int | None = None) -> FollowUpStats:
    """Totals per status, type and priority plus overdue pending reminders."""
    current = now if now is not None else int(time.time())
    stats = FollowUpStats(
        by_status={s.value: 0 for s in FollowUpStatus},
        by_type={t.value: 0 for t in FollowUpType},
        by_priority={p.value: 0 for p in FollowUpPriority},
    )
    for schedule in list_follow_ups():
        stats.total += 1
        stats.by_status[schedule.status.value] += 1
        stats.by_type[schedule.follow_up_type.value] += 1
        stats.by_priority[schedule.priority.value] += 1
        if schedule.status == FollowUpStatus.PENDING and schedule.scheduled_for < current:
            stats.overdue += 1
    return stats
