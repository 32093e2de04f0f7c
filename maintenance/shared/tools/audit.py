"""
Audit Log

Append-only record of security and lifecycle events, partitioned by UTC
day. Events are written with a conditional put and never updated.
"""

from datetime import date
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
import structlog

from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import ConditionalWriteError, PersistenceError
from maintenance.shared.models.dynamo import AuditEvent, AuditSeverity
from maintenance.shared.tools.dynamodb import get_table, is_conditional_failure, query_all

log = structlog.get_logger()


def append_audit_event(event: AuditEvent) -> AuditEvent:
    """
    Persist an audit event.

    Raises:
        ConditionalWriteError: If an event with the same key already exists
        PersistenceError: On other DynamoDB failures
    """
    settings = get_settings()
    table = get_table()
    try:
        table.put_item(
            Item=event.to_dynamodb(),
            ConditionExpression="attribute_not_exists(PK)",
        )
    except ClientError as e:
        if is_conditional_failure(e):
            raise ConditionalWriteError(
                table_name=settings.dynamodb_table_name,
                error_message=f"Audit event {event.event_id} already recorded",
            ) from e
        raise PersistenceError(
            operation="put",
            table_name=settings.dynamodb_table_name,
            error_message=str(e),
        ) from e
    except BotoCoreError as e:
        raise PersistenceError(
            operation="put",
            table_name=settings.dynamodb_table_name,
            error_message=str(e),
        ) from e

    log.debug("audit_event_appended", event_type=event.event_type, event_id=event.event_id)
    return event


def record_audit_event(
    event_type: str,
    *,
    severity: AuditSeverity = AuditSeverity.LOW,
    success: bool | None = None,
    actor_ref: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    assistance_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent | None:
    """
    Build and append an event, logging instead of raising on failure.

    Audit persistence never changes the outcome of the operation being
    audited, so callers use this rather than append_audit_event.
    """
    event = AuditEvent(
        event_type=event_type,
        severity=severity,
        success=success,
        actor_ref=actor_ref,
        ip_address=ip_address,
        user_agent=user_agent,
        assistance_id=assistance_id,
        metadata=metadata or {},
    )
    try:
        return append_audit_event(event)
    except Exception as e:
        log.error(
            "audit_append_failed",
            event_type=event_type,
            event_id=event.event_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None


def list_audit_events(
    day: date | str,
    *,
    event_type: str | None = None,
    limit: int | None = None,
) -> list[AuditEvent]:
    """
    List a day's events in chronological order.

    Args:
        day: UTC day (date or YYYY-MM-DD)
        event_type: Optional event type filter
        limit: Maximum results
    """
    day_key = day.isoformat() if isinstance(day, date) else day
    query_params: dict[str, Any] = {
        "KeyConditionExpression": "PK = :pk AND begins_with(SK, :sk_prefix)",
        "ExpressionAttributeValues": {
            ":pk": f"AUDIT#{day_key}",
            ":sk_prefix": "EVT#",
        },
    }
    if event_type:
        query_params["FilterExpression"] = "#event_type = :event_type"
        query_params["ExpressionAttributeNames"] = {"#event_type": "event_type"}
        query_params["ExpressionAttributeValues"][":event_type"] = event_type
    if limit:
        query_params["Limit"] = limit

    return [AuditEvent.from_dynamodb(item) for item in query_all(**query_params)]
