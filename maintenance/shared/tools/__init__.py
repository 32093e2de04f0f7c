# Shared Tools
"""
DynamoDB, directory, SES and audit helpers used by the engine.
"""

from maintenance.shared.tools.dynamodb import (
    get_table,
    get_client,
    get_item,
    query_all,
)
from maintenance.shared.tools.directory import (
    load_supplier,
    load_building,
    load_assistance,
)
from maintenance.shared.tools.email import (
    DispatchResult,
    NotificationDispatcher,
    SESNotificationDispatcher,
    validate_email_address,
)
from maintenance.shared.tools.audit import (
    append_audit_event,
    record_audit_event,
    list_audit_events,
)

__all__ = [
    # DynamoDB tools
    "get_table",
    "get_client",
    "get_item",
    "query_all",
    # Directory
    "load_supplier",
    "load_building",
    "load_assistance",
    # Email tools
    "DispatchResult",
    "NotificationDispatcher",
    "SESNotificationDispatcher",
    "validate_email_address",
    # Audit
    "append_audit_event",
    "record_audit_event",
    "list_audit_events",
]
