"""
Access Code Issuer

Mints the single-factor codes suppliers use to open the portal.

A code and the supplier's ActiveCodePointer are always written in one
DynamoDB transaction: the code put is conditioned on the code being new,
the pointer put (for get_or_issue) on the existing pointer being absent
or no longer reusable. Two schedulers racing for the same supplier
therefore converge on a single code.
"""

import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

from botocore.exceptions import BotoCoreError, ClientError
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import CodeCollisionError, PersistenceError
from maintenance.shared.models.dynamo import AccessCode, ActiveCodeKey, AuditSeverity
from maintenance.shared.tools.audit import record_audit_event
from maintenance.shared.tools.directory import load_supplier
from maintenance.shared.tools.dynamodb import (
    cancellation_reasons,
    error_code,
    get_client,
    get_item,
    serialize_item,
)
from maintenance.shared.tools.email import NotificationDispatcher

log = structlog.get_logger()

CODE_ALPHABET = string.ascii_uppercase + string.digits

_CONDITION_FAILED = "ConditionalCheckFailed"


class PointerRaceLost(Exception):
    """Another writer replaced the active-code pointer first."""

    def __init__(self, pointer: ActiveCodeKey) -> None:
        self.pointer = pointer
        super().__init__(f"Active code pointer {pointer.pk}/{pointer.sk} already replaced")


def generate_access_code(length: int | None = None) -> str:
    """Random code of upper-case letters and digits from a CSPRNG."""
    length = length or get_settings().access_code_length
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def build_portal_url(code: str) -> str:
    """Link to the supplier portal with the code pre-filled."""
    base_url = get_settings().portal_base_url.rstrip("/")
    return f"{base_url}/supplier-portal?{urlencode({'code': code})}"


def _collision_retry(fn):
    """Bound fn to the configured number of attempts on CodeCollisionError."""
    return retry(
        stop=stop_after_attempt(get_settings().access_code_max_generation_attempts),
        retry=retry_if_exception_type(CodeCollisionError),
        reraise=True,
    )(fn)


def _new_code(supplier_id: str, assistance_id: str | None, ttl: timedelta, now: int) -> AccessCode:
    return AccessCode(
        code=generate_access_code(),
        supplier_id=supplier_id,
        assistance_id=assistance_id,
        created_at=now,
        expires_at=now + int(ttl.total_seconds()),
    )


def _write_code_and_pointer(
    code: AccessCode,
    pointer: ActiveCodeKey,
    *,
    pointer_condition: dict[str, Any] | None = None,
) -> None:
    """
    Transactionally put the code and its pointer.

    Raises:
        CodeCollisionError: The generated code already exists
        PointerRaceLost: The pointer condition failed
        PersistenceError: On other DynamoDB failures
    """
    settings = get_settings()
    table_name = settings.dynamodb_table_name

    pointer_put: dict[str, Any] = {
        "TableName": table_name,
        "Item": serialize_item(pointer.to_item(code)),
    }
    if pointer_condition:
        pointer_put["ConditionExpression"] = pointer_condition["expression"]
        pointer_put["ExpressionAttributeValues"] = serialize_item(pointer_condition["values"])

    try:
        get_client().transact_write_items(
            TransactItems=[
                {
                    "Put": {
                        "TableName": table_name,
                        "Item": serialize_item(code.to_dynamodb()),
                        "ConditionExpression": "attribute_not_exists(PK)",
                    }
                },
                {"Put": pointer_put},
            ]
        )
    except ClientError as e:
        if error_code(e) == "TransactionCanceledException":
            reasons = cancellation_reasons(e)
            if len(reasons) > 1 and reasons[1] == _CONDITION_FAILED:
                raise PointerRaceLost(pointer) from e
            if reasons and reasons[0] == _CONDITION_FAILED:
                log.warning("access_code_collision", code_prefix=code.code_prefix)
                raise CodeCollisionError(table_name) from e
        log.error("access_code_write_failed", supplier_id=code.supplier_id, error=str(e))
        raise PersistenceError(
            operation="transact",
            table_name=table_name,
            error_message=str(e),
        ) from e
    except BotoCoreError as e:
        log.error("access_code_write_failed", supplier_id=code.supplier_id, error=str(e))
        raise PersistenceError(
            operation="transact",
            table_name=table_name,
            error_message=str(e),
        ) from e


def load_access_code(code: str, *, consistent_read: bool = True) -> AccessCode | None:
    """Load an access code record by its (already normalized) value."""
    item = get_item({"PK": f"CODE#{code}", "SK": "METADATA"}, consistent_read=consistent_read)
    return AccessCode.from_dynamodb(item) if item else None


def _load_reusable(pointer: ActiveCodeKey, reuse_cutoff: int) -> AccessCode | None:
    """The pointed-to code, if it stays valid until at least reuse_cutoff."""
    item = get_item(pointer.to_key())
    if not item or int(item.get("expires_at", 0)) < reuse_cutoff:
        return None
    code = load_access_code(item["code"])
    if code is None or code.expires_at < reuse_cutoff:
        return None
    return code


def issue(
    supplier_id: str,
    assistance_id: str | None = None,
    ttl: timedelta | None = None,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: int | None = None,
) -> AccessCode:
    """
    Mint a fresh code and point the supplier's active-code pointer at it.

    When a dispatcher is given the code is emailed to the supplier using
    the magic_code template. A failed send is audited but the code stays
    issued.

    Raises:
        CodeCollisionError: If every generated code collided
        PersistenceError: On DynamoDB failure
    """
    settings = get_settings()
    ttl = ttl or timedelta(hours=settings.invite_code_ttl_hours)
    issued_at = now if now is not None else int(time.time())
    pointer = ActiveCodeKey(supplier_id, assistance_id)

    @_collision_retry
    def _attempt() -> AccessCode:
        code = _new_code(supplier_id, assistance_id, ttl, issued_at)
        _write_code_and_pointer(code, pointer)
        return code

    code = _attempt()
    log.info(
        "access_code_issued",
        supplier_id=supplier_id,
        assistance_id=assistance_id,
        code_prefix=code.code_prefix,
        expires_at=code.expires_at,
    )
    record_audit_event(
        "magic_code_issued",
        actor_ref=supplier_id,
        assistance_id=assistance_id,
        metadata={"code_prefix": code.code_prefix, "expires_at": code.expires_at},
    )

    if dispatcher is not None:
        _send_code(dispatcher, code)
    return code


def _send_code(dispatcher: NotificationDispatcher, code: AccessCode) -> bool:
    """Email an issued code. Any failure is logged and audited, never raised."""
    try:
        supplier = load_supplier(code.supplier_id)
        if supplier is None or not supplier.email:
            result_ok, error = False, "supplier has no email address"
        else:
            expires = datetime.fromtimestamp(code.expires_at, tz=timezone.utc)
            result = dispatcher.send(
                supplier.email,
                "Supplier portal access code",
                "magic_code",
                {
                    "supplierName": supplier.name,
                    "magicCode": code.code,
                    "portalUrl": build_portal_url(code.code),
                    "expiresAt": expires.isoformat(),
                    "assistanceId": code.assistance_id,
                },
            )
            result_ok, error = result.ok, result.error
    except Exception as e:
        result_ok, error = False, str(e)

    if not result_ok:
        log.warning(
            "access_code_dispatch_failed",
            supplier_id=code.supplier_id,
            code_prefix=code.code_prefix,
            error=error,
        )
        record_audit_event(
            "magic_code_dispatch_failed",
            severity=AuditSeverity.MEDIUM,
            success=False,
            actor_ref=code.supplier_id,
            assistance_id=code.assistance_id,
            metadata={"code_prefix": code.code_prefix, "error": error},
        )
    return result_ok


def get_or_issue(
    supplier_id: str,
    assistance_id: str | None = None,
    ttl: timedelta | None = None,
    *,
    now: int | None = None,
) -> AccessCode:
    """
    Return the supplier's reusable code, minting one only when needed.

    A code is reused while it remains valid for at least
    reminder_code_min_remaining_hours. Replacement happens in one
    transaction guarded on the pointer, so concurrent callers for the same
    (supplier, assistance) all end up with the same code.

    Raises:
        CodeCollisionError: If every generated code collided and no
            concurrent writer produced a usable code either
        PersistenceError: On DynamoDB failure
    """
    settings = get_settings()
    ttl = ttl or timedelta(days=settings.reminder_code_ttl_days)
    current = now if now is not None else int(time.time())
    reuse_cutoff = current + settings.reminder_code_min_remaining_hours * 3600
    pointer = ActiveCodeKey(supplier_id, assistance_id)

    existing = _load_reusable(pointer, reuse_cutoff)
    if existing is not None:
        log.debug(
            "access_code_reused",
            supplier_id=supplier_id,
            assistance_id=assistance_id,
            code_prefix=existing.code_prefix,
        )
        return existing

    condition = {
        "expression": "attribute_not_exists(PK) OR expires_at < :reuse_cutoff",
        "values": {":reuse_cutoff": reuse_cutoff},
    }

    @_collision_retry
    def _attempt() -> AccessCode:
        code = _new_code(supplier_id, assistance_id, ttl, current)
        _write_code_and_pointer(code, pointer, pointer_condition=condition)
        return code

    try:
        code = _attempt()
    except PointerRaceLost:
        winner = _load_reusable(pointer, reuse_cutoff)
        if winner is None:
            raise PersistenceError(
                operation="transact",
                table_name=settings.dynamodb_table_name,
                error_message="Active code pointer replaced by an unusable code",
            )
        log.info(
            "access_code_race_lost",
            supplier_id=supplier_id,
            assistance_id=assistance_id,
            code_prefix=winner.code_prefix,
        )
        return winner
    except CodeCollisionError:
        winner = _load_reusable(pointer, reuse_cutoff)
        if winner is None:
            raise
        return winner

    log.info(
        "access_code_issued",
        supplier_id=supplier_id,
        assistance_id=assistance_id,
        code_prefix=code.code_prefix,
        expires_at=code.expires_at,
    )
    return code
