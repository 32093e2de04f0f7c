"""
Pytest Configuration and Shared Fixtures

Provides moto AWS mocking, seeded directory records, and test utilities.
"""

import os
from datetime import date, datetime, timezone
from typing import Any, Generator

import boto3
import pytest
from moto import mock_aws

# Set test environment before importing application modules
os.environ["MAINTENANCE_DYNAMODB_TABLE_NAME"] = "TestMaintenancePortal"
os.environ["MAINTENANCE_SES_FROM_ADDRESS"] = "portal@test.example.com"
os.environ["MAINTENANCE_PORTAL_BASE_URL"] = "https://portal.test.example.com"
os.environ["MAINTENANCE_AWS_REGION"] = "us-west-2"
os.environ["MAINTENANCE_ENVIRONMENT"] = "development"
os.environ["AWS_DEFAULT_REGION"] = "us-west-2"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"

from maintenance.shared.config import get_settings
from maintenance.shared.models.directory import Assistance, Building, Supplier
from maintenance.shared.models.follow_up import FollowUpPriority
from tests.mocks.fake_dispatcher import FakeDispatcher

TABLE_NAME = "TestMaintenancePortal"


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reload settings from the environment for every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# --- Time Fixtures ---


@pytest.fixture
def frozen_time() -> int:
    """Fixed Unix timestamp for deterministic tests."""
    return 1738800000  # 2025-02-06 00:00:00 UTC


@pytest.fixture
def frozen_datetime(frozen_time: int) -> datetime:
    """Fixed datetime for deterministic tests."""
    return datetime.fromtimestamp(frozen_time, tz=timezone.utc)


# --- AWS Mocking Fixtures ---


@pytest.fixture
def aws_credentials():
    """Mock AWS credentials for moto."""
    return {
        "aws_access_key_id": "testing",
        "aws_secret_access_key": "testing",
        "region_name": "us-west-2",
    }


@pytest.fixture
def mock_dynamodb(aws_credentials):
    """
    Create a mocked DynamoDB table.

    Creates the MaintenancePortal table with GSI1 (status partition,
    zero-padded due time sort key).
    """
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", **aws_credentials)
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
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
                    "IndexName": "GSI1",
                    "KeySchema": [
                        {"AttributeName": "GSI1PK", "KeyType": "HASH"},
                        {"AttributeName": "GSI1SK", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        table.meta.client.get_waiter("table_exists").wait(TableName=TABLE_NAME)
        yield table


@pytest.fixture
def mock_ses(aws_credentials):
    """Create a mocked SES client with verified identity and one template."""
    with mock_aws():
        ses = boto3.client("ses", **aws_credentials)
        ses.verify_email_identity(EmailAddress="portal@test.example.com")
        ses.create_template(
            Template={
                "TemplateName": "maintenance-work_reminder",
                "SubjectPart": "{{subject}}",
                "TextPart": "Hello {{supplierName}}",
                "HtmlPart": "<p>Hello {{supplierName}}</p>",
            }
        )
        yield ses


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    """Notification dispatcher that records sends and always succeeds."""
    return FakeDispatcher()


@pytest.fixture
def failing_dispatcher() -> FakeDispatcher:
    """Notification dispatcher that records sends and always fails."""
    return FakeDispatcher(fail_with="SMTP relay unavailable")


# --- Directory Fixtures ---


@pytest.fixture
def supplier() -> Supplier:
    """Sample active supplier."""
    return Supplier(
        supplier_id="sup-001",
        name="Rossi Plumbing",
        email="ops@rossi-plumbing.example.com",
        phone="+39 02 555 0101",
        address="Via Roma 1, Milano",
        specialization="plumbing",
    )


@pytest.fixture
def building() -> Building:
    """Sample building."""
    return Building(
        building_id="bld-001",
        name="Condominium Aurora",
        address="Via Verdi 12, Milano",
    )


@pytest.fixture
def assistance(building: Building) -> Assistance:
    """Sample assistance on the sample building."""
    return Assistance(
        assistance_id="ast-001",
        title="Water leak in the garage ceiling",
        description="Water drips from the ceiling near parking spot 14.",
        priority=FollowUpPriority.URGENT,
        building_id=building.building_id,
        scheduled_start_date=date(2025, 2, 10),
        expected_completion_date=date(2025, 2, 3),
        quotation_deadline=date(2025, 2, 8),
    )


@pytest.fixture
def seeded_directory(
    mock_dynamodb,
    supplier: Supplier,
    building: Building,
    assistance: Assistance,
) -> dict[str, Any]:
    """Supplier, building and assistance written to the mocked table."""
    for record in (supplier, building, assistance):
        mock_dynamodb.put_item(Item=record.to_dynamodb())
    return {
        "table": mock_dynamodb,
        "supplier": supplier,
        "building": building,
        "assistance": assistance,
    }
