"""
Session Validator

Validates a submitted access code for the supplier portal.

Every attempt is rate limited (per origin, then per origin and code)
before the code is looked up, and every outcome is audited. Callers only
ever see a generic rejection; the audit log keeps the reason.
"""

import hashlib
import re
import time
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
import structlog

from maintenance.credentials.codes import load_access_code
from maintenance.credentials.rate_limiter import DynamoCounterStore, RateLimiter
from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import (
    AccessCodeNotFoundError,
    InvalidAccessCodeError,
    PersistenceError,
    RateLimitedError,
)
from maintenance.shared.models.directory import Supplier
from maintenance.shared.models.dynamo import (
    ACCESS_CODE_PATTERN,
    AccessCode,
    AuditSeverity,
    isoformat_epoch,
    mask_code,
)
from maintenance.shared.tools.audit import record_audit_event
from maintenance.shared.tools.directory import load_supplier
from maintenance.shared.tools.dynamodb import get_table, is_conditional_failure

log = structlog.get_logger()

GENERIC_REJECTION = "Invalid or expired access code"

_CODE_RE = re.compile(ACCESS_CODE_PATTERN)

# Longest textual IPv6 address
MAX_ORIGIN_LENGTH = 45


@dataclass(frozen=True)
class SessionValidation:
    """Outcome of a validate_session call."""

    valid: bool
    supplier: Supplier | None = None
    assistance_id: str | None = None
    access_count: int | None = None
    last_used_at: int | None = None
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        """JSON body for the validate-session endpoint."""
        if not self.valid:
            return {"valid": False, "error": self.error or GENERIC_REJECTION}
        return {
            "valid": True,
            "supplier": self.supplier.to_public_dict() if self.supplier else None,
            "assistance_id": self.assistance_id,
            "access_count": self.access_count,
            "last_used_at": isoformat_epoch(self.last_used_at),
        }


def normalize_code(magic_code: str) -> str:
    return (magic_code or "").strip().upper()


def _default_limiter() -> RateLimiter:
    return RateLimiter(DynamoCounterStore())


def rate_limit_keys(ip_address: str, code: str) -> tuple[str, str]:
    """
    Counter keys for an attempt: per origin, and per origin and code.

    The submitted code is stored only as a SHA-256 digest, so keys stay
    bounded in size and never hold a usable secret.
    """
    origin = ip_address[:MAX_ORIGIN_LENGTH]
    digest = hashlib.sha256(code.encode("utf-8")).hexdigest()
    return f"ip:{origin}", f"code:{origin}:{digest}"


def _enforce_rate_limits(
    limiter: RateLimiter,
    ip_address: str,
    code: str,
    now: int,
    user_agent: str | None,
) -> None:
    settings = get_settings()
    ip_key, code_key = rate_limit_keys(ip_address, code)
    checks = (
        (ip_key, settings.validate_ip_max_attempts),
        (code_key, settings.validate_code_max_attempts),
    )
    for key, limit in checks:
        decision = limiter.allow(key, limit, settings.validate_window_seconds, now=now)
        if decision.allowed:
            continue
        scope = key.split(":", 1)[0]
        record_audit_event(
            "rate_limited",
            severity=AuditSeverity.MEDIUM,
            success=False,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "scope": scope,
                "code_prefix": mask_code(code),
                "count": decision.count,
                "retry_after": decision.retry_after,
            },
        )
        # Only the scope leaves this module
        raise RateLimitedError(key=scope, retry_after=decision.retry_after or 0)


def _lookup(code: str, now: int) -> tuple[AccessCode, Supplier]:
    """
    Resolve a normalized code to its record and active supplier.

    Raises:
        InvalidAccessCodeError: Code does not match the expected shape
        AccessCodeNotFoundError: Unknown, expired, or supplier unusable
        PersistenceError: On DynamoDB failure
    """
    if not _CODE_RE.match(code):
        raise InvalidAccessCodeError(mask_code(code), ACCESS_CODE_PATTERN)

    record = load_access_code(code)
    if record is None:
        raise AccessCodeNotFoundError(mask_code(code), "not_found")
    if record.is_expired(now):
        raise AccessCodeNotFoundError(mask_code(code), "expired")

    supplier = load_supplier(record.supplier_id)
    if supplier is None or not supplier.is_active:
        raise AccessCodeNotFoundError(mask_code(code), "supplier_missing")
    return record, supplier


def _record_use(code: str, now: int) -> dict[str, Any]:
    """
    Bump usage counters while the code is still unexpired.

    Raises:
        AccessCodeNotFoundError: The code expired between lookup and update
        PersistenceError: On other DynamoDB failures
    """
    settings = get_settings()
    try:
        response = get_table().update_item(
            Key={"PK": f"CODE#{code}", "SK": "METADATA"},
            UpdateExpression="ADD #access_count :one SET #last_used_at = :now",
            ConditionExpression="attribute_exists(PK) AND #expires_at > :now",
            ExpressionAttributeNames={
                "#access_count": "access_count",
                "#last_used_at": "last_used_at",
                "#expires_at": "expires_at",
            },
            ExpressionAttributeValues={":one": 1, ":now": now},
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if is_conditional_failure(e):
            raise AccessCodeNotFoundError(mask_code(code), "expired") from e
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
    return response["Attributes"]


def validate_session(
    magic_code: str,
    ip_address: str,
    user_agent: str | None = None,
    *,
    limiter: RateLimiter | None = None,
    now: int | None = None,
) -> SessionValidation:
    """
    Validate a supplier access code.

    Args:
        magic_code: Code as typed or pasted by the supplier
        ip_address: Network origin of the request
        user_agent: Client user agent, recorded in the audit log
        limiter: Rate limiter; defaults to the DynamoDB-backed one
        now: Override current Unix time

    Returns:
        SessionValidation; invalid codes yield valid=False with a generic error

    Raises:
        RateLimitedError: Too many attempts from this origin or for this code
        PersistenceError: On DynamoDB failure
    """
    now = now if now is not None else int(time.time())
    limiter = limiter or _default_limiter()
    code = normalize_code(magic_code)
    code_prefix = mask_code(code)
    ip_address = ip_address or "unknown"

    _enforce_rate_limits(limiter, ip_address, code, now, user_agent)

    try:
        record, supplier = _lookup(code, now)
        attributes = _record_use(code, now)
    except InvalidAccessCodeError:
        reason = "malformed"
    except AccessCodeNotFoundError as e:
        reason = e.reason
    except PersistenceError as e:
        log.error("session_validation_error", code_prefix=code_prefix, error=str(e))
        record_audit_event(
            "validation_error",
            severity=AuditSeverity.HIGH,
            success=False,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"code_prefix": code_prefix, "error": e.message},
        )
        raise
    else:
        access_count = int(attributes.get("access_count", 0))
        last_used_at = int(attributes.get("last_used_at", now))
        log.info(
            "session_validated",
            supplier_id=supplier.supplier_id,
            assistance_id=record.assistance_id,
            code_prefix=code_prefix,
            access_count=access_count,
        )
        record_audit_event(
            "login",
            success=True,
            actor_ref=supplier.supplier_id,
            ip_address=ip_address,
            user_agent=user_agent,
            assistance_id=record.assistance_id,
            metadata={"code_prefix": code_prefix, "access_count": access_count},
        )
        return SessionValidation(
            valid=True,
            supplier=supplier,
            assistance_id=record.assistance_id,
            access_count=access_count,
            last_used_at=last_used_at,
        )

    log.info("session_rejected", code_prefix=code_prefix, reason=reason)
    record_audit_event(
        "magic_code_invalid",
        severity=AuditSeverity.MEDIUM,
        success=False,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"code_prefix": code_prefix, "reason": reason},
    )
    return SessionValidation(valid=False, error=GENERIC_REJECTION)
