"""
ProcessFollowUps Lambda Handler

Entry point for the periodic follow-up processor.

Trigger: EventBridge Scheduled Rule (e.g., rate(15 minutes)) or
         API Gateway POST /process-followups
Output: {success, processed, errors, total} (plus error on failure)

Flow:
1. Parse optional batch_size from the scheduled detail or request body
2. Run one processor batch with the SES dispatcher
3. Return the summary, 500 when selection failed
"""

import json
from typing import Any

import structlog

from maintenance.followups.processor import process_follow_ups
from maintenance.shared.config import get_settings
from maintenance.shared.tools.email import SESNotificationDispatcher

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def _parse_options(event: dict[str, Any]) -> dict[str, Any]:
    """
    Pull optional overrides from a scheduled event detail or an HTTP body.

    Unparseable payloads are ignored; the processor runs with defaults.
    """
    payload: Any = event.get("detail") or event.get("body") or {}
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            log.warning("process_followups_body_ignored")
            payload = {}
    if not isinstance(payload, dict):
        return {}

    options: dict[str, Any] = {}
    batch_size = payload.get("batch_size")
    if isinstance(batch_size, int) and batch_size > 0:
        options["batch_size"] = batch_size
    return options


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Run one follow-up processing batch.

    Args:
        event: Scheduled EventBridge event or API Gateway proxy event
        context: Lambda context

    Returns:
        API Gateway style response with the processing summary
    """
    options = _parse_options(event or {})
    log.info("process_followups_invoked", **options)

    settings = get_settings()
    dispatcher = SESNotificationDispatcher(template_prefix=settings.ses_template_prefix)

    try:
        result = process_follow_ups(dispatcher, batch_size=options.get("batch_size"))
    except Exception as e:
        log.exception("process_followups_failed", error=str(e))
        return {
            "statusCode": 500,
            "headers": RESPONSE_HEADERS,
            "body": json.dumps({"success": False, "error": "Internal server error"}),
        }

    return {
        "statusCode": 200 if result.success else 500,
        "headers": RESPONSE_HEADERS,
        "body": json.dumps(result.to_response()),
    }
