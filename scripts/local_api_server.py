"""
FastAPI Backend Server for Local Development

Serves POST /process-followups and POST /validate-session over moto-mocked
DynamoDB and SES, plus operator routes for follow-up schedules and
access codes. The table is seeded with generated data on startup.
"""

import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

# Set environment for local mode BEFORE any other imports
os.environ["MAINTENANCE_DYNAMODB_ENDPOINT_URL"] = "mock"
os.environ["MAINTENANCE_SES_ENDPOINT_URL"] = "mock"
os.environ["MAINTENANCE_ENVIRONMENT"] = "development"
os.environ["MAINTENANCE_DYNAMODB_TABLE_NAME"] = "MaintenancePortal-local"
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")

from moto import mock_aws

mock = mock_aws()
mock.start()

import structlog

# Configure logging
structlog.configure(
    processors=[
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

# Clear settings cache so new env vars take effect
from maintenance.shared.config import get_settings

get_settings.cache_clear()

import boto3
from botocore.exceptions import ClientError
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from maintenance.credentials.codes import build_portal_url, issue
from maintenance.credentials.validator import validate_session
from maintenance.followups.processor import process_follow_ups
from maintenance.followups.store import (
    cancel_follow_up,
    create_follow_up,
    get_follow_up_stats,
    list_follow_ups,
    load_follow_up,
    reschedule_follow_up,
)
from maintenance.followups.templates import TEMPLATE_BUILDERS
from maintenance.shared.exceptions import (
    FollowUpNotFoundError,
    InvalidFollowUpTypeError,
    InvalidStateTransitionError,
    MaintenanceError,
    PersistenceError,
    RateLimitedError,
)
from maintenance.shared.models.dynamo import FollowUpSchedule, isoformat_epoch
from maintenance.shared.tools.audit import list_audit_events
from maintenance.shared.tools.email import SESNotificationDispatcher
from scripts.generate_test_data import seed_local_data


def setup_local_dynamodb():
    """Create the single table with GSI1 and TTL for local development."""
    settings = get_settings()
    dynamodb = boto3.resource("dynamodb", region_name=settings.aws_region)

    try:
        table = dynamodb.create_table(
            TableName=settings.dynamodb_table_name,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
                {"AttributeName": "GSI1PK", "AttributeType": "S"},
                {"AttributeName": "GSI1SK", "AttributeType": "S"},
            ],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": settings.dynamodb_gsi1_name,
                    "KeySchema": [
                        {"AttributeName": "GSI1PK", "KeyType": "HASH"},
                        {"AttributeName": "GSI1SK", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        table.meta.client.get_waiter("table_exists").wait(TableName=settings.dynamodb_table_name)
        table.meta.client.update_time_to_live(
            TableName=settings.dynamodb_table_name,
            TimeToLiveSpecification={"Enabled": True, "AttributeName": "expires_at"},
        )
        log.info("dynamodb_table_created", table_name=settings.dynamodb_table_name)
    except ClientError as e:
        if e.response["Error"]["Code"] != "ResourceInUseException":
            log.warning("dynamodb_table_setup_error", error=str(e))


def setup_local_ses():
    """Verify the sender and register one template per notification."""
    settings = get_settings()
    ses = boto3.client("ses", region_name=settings.aws_region)

    try:
        ses.verify_email_identity(EmailAddress=settings.ses_from_address)
        log.info("ses_identity_verified", email=settings.ses_from_address)
    except ClientError as e:
        log.warning("ses_identity_setup_error", error=str(e))

    template_names = ["magic_code", *(t.value for t in TEMPLATE_BUILDERS)]
    for name in template_names:
        try:
            ses.create_template(
                Template={
                    "TemplateName": f"{settings.ses_template_prefix}{name}",
                    "SubjectPart": "{{subject}}",
                    "TextPart": "Hello {{supplierName}}, open {{portalUrl}} (code {{magicCode}}).",
                    "HtmlPart": "<p>Hello {{supplierName}}</p><p><a href='{{portalUrl}}'>Open portal</a></p>",
                }
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "AlreadyExists":
                log.warning("ses_template_setup_error", template=name, error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    setup_local_dynamodb()
    setup_local_ses()
    summary = seed_local_data()
    log.info(
        "local_data_seeded",
        suppliers=len(summary["suppliers"]),
        follow_ups=len(summary["follow_ups"]),
    )
    for supplier_id, code in summary["codes"].items():
        log.info("local_invite_code", supplier_id=supplier_id, portal_url=build_portal_url(code))
    yield
    log.info("shutting_down")
    mock.stop()


app = FastAPI(
    title="Maintenance Supplier Portal API",
    description="Local development server for supplier access and follow-up reminders",
    lifespan=lifespan,
)

# CORS configuration
origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
if os.environ.get("CORS_ORIGINS"):
    origins.extend(o.strip() for o in os.environ["CORS_ORIGINS"].split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _dispatcher() -> SESNotificationDispatcher:
    return SESNotificationDispatcher(template_prefix=get_settings().ses_template_prefix)


def _schedule_to_json(schedule: FollowUpSchedule) -> dict[str, Any]:
    return {
        "id": schedule.follow_up_id,
        "assistance_id": schedule.assistance_id,
        "supplier_id": schedule.supplier_id,
        "follow_up_type": schedule.follow_up_type.value,
        "priority": schedule.priority.value,
        "status": schedule.status.value,
        "scheduled_for": isoformat_epoch(schedule.scheduled_for),
        "sent_at": isoformat_epoch(schedule.sent_at),
        "attempt_count": schedule.attempt_count,
        "max_attempts": schedule.max_attempts,
        "next_attempt_at": isoformat_epoch(schedule.next_attempt_at),
        "last_error": schedule.last_error,
        "metadata": schedule.metadata.model_dump(mode="json", exclude_none=True),
        "created_at": isoformat_epoch(schedule.created_at),
        "updated_at": isoformat_epoch(schedule.updated_at),
    }


# =====================================================
# Request Models
# =====================================================


class ValidateSessionRequest(BaseModel):
    magicCode: str | None = None


class CreateFollowUpRequest(BaseModel):
    follow_up_type: str
    assistance_id: str
    supplier_id: str
    scheduled_for: datetime
    priority: str = "normal"
    metadata: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = None


class RescheduleRequest(BaseModel):
    new_date: datetime


class IssueCodeRequest(BaseModel):
    supplier_id: str
    assistance_id: str | None = None
    send_email: bool = True


# =====================================================
# API Endpoints
# =====================================================


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "environment": "local", "version": "0.1.0"}


@app.post("/process-followups")
def process_followups_endpoint(batch_size: int | None = Query(default=None, ge=1)):
    """Run one follow-up processor batch."""
    result = process_follow_ups(_dispatcher(), batch_size=batch_size)
    return JSONResponse(status_code=200 if result.success else 500, content=result.to_response())


@app.post("/validate-session")
def validate_session_endpoint(body: ValidateSessionRequest, request: Request):
    """Exchange an access code for the supplier profile."""
    if not body.magicCode:
        return JSONResponse(status_code=400, content={"valid": False, "error": "Magic code is required"})

    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (
        request.client.host if request.client else "unknown"
    )
    try:
        result = validate_session(
            body.magicCode,
            ip_address,
            request.headers.get("user-agent", "unknown"),
        )
    except RateLimitedError as e:
        return JSONResponse(
            status_code=429,
            content={"valid": False, "error": "Too many attempts, try again later"},
            headers={"Retry-After": str(e.retry_after)},
        )
    except PersistenceError as e:
        log.error("validate_session_storage_failed", error=str(e))
        return JSONResponse(status_code=500, content={"valid": False, "error": "Internal server error"})
    return result.to_response()


@app.get("/api/follow-ups")
def list_follow_ups_endpoint(
    status: str | None = None,
    follow_up_type: str | None = None,
    priority: str | None = None,
):
    """List follow-up schedules with optional filters."""
    try:
        schedules = list_follow_ups(status=status, follow_up_type=follow_up_type, priority=priority)
    except (InvalidFollowUpTypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"follow_ups": [_schedule_to_json(s) for s in schedules]}


@app.get("/api/follow-ups/stats")
def follow_up_stats_endpoint():
    """Dashboard counts."""
    return get_follow_up_stats().to_dict()


@app.get("/api/follow-ups/{follow_up_id}")
def get_follow_up_endpoint(follow_up_id: str):
    schedule = load_follow_up(follow_up_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Follow-up not found")
    return _schedule_to_json(schedule)


@app.post("/api/follow-ups", status_code=201)
def create_follow_up_endpoint(body: CreateFollowUpRequest):
    """Schedule a reminder."""
    try:
        schedule = create_follow_up(
            body.follow_up_type,
            body.assistance_id,
            body.supplier_id,
            body.scheduled_for.replace(tzinfo=body.scheduled_for.tzinfo or timezone.utc),
            body.priority,
            body.metadata,
            max_attempts=body.max_attempts,
        )
    except (InvalidFollowUpTypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _schedule_to_json(schedule)


@app.post("/api/follow-ups/{follow_up_id}/cancel")
def cancel_follow_up_endpoint(follow_up_id: str):
    try:
        return _schedule_to_json(cancel_follow_up(follow_up_id))
    except FollowUpNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)


@app.post("/api/follow-ups/{follow_up_id}/reschedule")
def reschedule_follow_up_endpoint(follow_up_id: str, body: RescheduleRequest):
    try:
        schedule = reschedule_follow_up(
            follow_up_id,
            body.new_date.replace(tzinfo=body.new_date.tzinfo or timezone.utc),
        )
    except FollowUpNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except (InvalidStateTransitionError, MaintenanceError) as e:
        raise HTTPException(status_code=409, detail=e.message)
    return _schedule_to_json(schedule)


@app.post("/api/access-codes", status_code=201)
def issue_access_code_endpoint(body: IssueCodeRequest):
    """Issue an invite code, optionally emailing it to the supplier."""
    code = issue(
        body.supplier_id,
        body.assistance_id,
        dispatcher=_dispatcher() if body.send_email else None,
    )
    return {
        "code": code.code,
        "portal_url": build_portal_url(code.code),
        "expires_at": isoformat_epoch(code.expires_at),
    }


@app.get("/api/audit/{day}")
def audit_events_endpoint(day: date, event_type: str | None = None):
    """Audit events for one UTC day."""
    events = list_audit_events(day, event_type=event_type)
    return {"events": [e.model_dump(mode="json") for e in events]}


if __name__ == "__main__":
    import uvicorn

    log.info("starting_local_api_server", host="0.0.0.0", port=8000)
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
