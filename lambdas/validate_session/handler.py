"""
ValidateSession Lambda Handler

Entry point for POST /validate-session {magicCode}.

Responses:
- 200 {valid: true, supplier, assistance_id, access_count, last_used_at}
- 200 {valid: false, error} for unknown, expired or malformed codes
- 400 when magicCode is missing
- 429 with Retry-After when the origin or code is throttled
- 500 when storage fails
"""

import base64
import json
from typing import Any

import structlog

from maintenance.credentials.validator import validate_session
from maintenance.shared.exceptions import PersistenceError, RateLimitedError

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


def _response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {**RESPONSE_HEADERS, **(headers or {})},
        "body": json.dumps(body),
    }


def _parse_body(event: dict[str, Any]) -> dict[str, Any]:
    body = event.get("body")
    if body is None:
        return {}
    if isinstance(body, dict):
        return body
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _headers(event: dict[str, Any]) -> dict[str, str]:
    return {k.lower(): v for k, v in (event.get("headers") or {}).items() if v is not None}


def extract_client_ip(event: dict[str, Any]) -> str:
    """
    Origin of the request: first X-Forwarded-For hop, then X-Real-IP,
    then the API Gateway source IP (REST or HTTP API shape).
    """
    headers = _headers(event)
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if headers.get("x-real-ip"):
        return headers["x-real-ip"].strip()

    request_context = event.get("requestContext") or {}
    source_ip = (request_context.get("identity") or {}).get("sourceIp") or (
        request_context.get("http") or {}
    ).get("sourceIp")
    return source_ip or "unknown"


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Validate a supplier access code.

    Args:
        event: API Gateway proxy event
        context: Lambda context

    Returns:
        API Gateway style response
    """
    event = event or {}
    if (event.get("httpMethod") or "").upper() == "OPTIONS":
        return _response(200, {"ok": True})

    body = _parse_body(event)
    magic_code = body.get("magicCode")
    if not magic_code or not isinstance(magic_code, str):
        return _response(400, {"valid": False, "error": "Magic code is required"})

    ip_address = extract_client_ip(event)
    user_agent = _headers(event).get("user-agent", "unknown")

    try:
        result = validate_session(magic_code, ip_address, user_agent)
    except RateLimitedError as e:
        return _response(
            429,
            {"valid": False, "error": "Too many attempts, try again later"},
            headers={"Retry-After": str(e.retry_after)},
        )
    except PersistenceError as e:
        log.error("validate_session_storage_failed", error=str(e))
        return _response(500, {"valid": False, "error": "Internal server error"})
    except Exception as e:
        log.exception("validate_session_unexpected_error", error=str(e))
        return _response(500, {"valid": False, "error": "Internal server error"})

    return _response(200, result.to_response())
