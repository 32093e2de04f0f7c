"""
DynamoDB Tools

Table access shared by every component. All records live in a single
table; callers own their key layout (see models/dynamo.py).
"""

import re
from typing import Any

import boto3
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import PersistenceError

log = structlog.get_logger()

_serializer = TypeSerializer()


def get_table():
    """Get DynamoDB table resource."""
    settings = get_settings()
    dynamodb = boto3.resource("dynamodb", **settings.dynamodb_config)
    return dynamodb.Table(settings.dynamodb_table_name)


def get_client():
    """Get DynamoDB client (needed for transactions)."""
    settings = get_settings()
    return boto3.client("dynamodb", **settings.dynamodb_config)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_conditional_failure(error: ClientError) -> bool:
    """Whether a ClientError is a failed ConditionExpression."""
    return error_code(error) == "ConditionalCheckFailedException"


_REASONS_IN_MESSAGE = re.compile(r"\[([^\]]*)\]\s*$")


def cancellation_reasons(error: ClientError) -> list[str]:
    """
    Per-item reason codes of a cancelled transaction, in request order.

    Falls back to the bracketed list DynamoDB appends to the error message
    when the structured CancellationReasons field is absent.
    """
    reasons = error.response.get("CancellationReasons")
    if reasons:
        return [reason.get("Code", "None") for reason in reasons]
    message = error.response.get("Error", {}).get("Message", "")
    match = _REASONS_IN_MESSAGE.search(message)
    if not match:
        return []
    return [part.strip() for part in match.group(1).split(",")]


def serialize_item(item: dict[str, Any]) -> dict[str, Any]:
    """Resource-style item to low-level client attribute values."""
    return {k: _serializer.serialize(v) for k, v in item.items()}


def get_item(key: dict[str, str], *, consistent_read: bool = True) -> dict[str, Any] | None:
    """
    Fetch a single item by key.

    Returns:
        The raw item, or None when absent

    Raises:
        PersistenceError: On DynamoDB operation failure
    """
    settings = get_settings()
    table = get_table()
    try:
        response = table.get_item(Key=key, ConsistentRead=consistent_read)
    except (ClientError, BotoCoreError) as e:
        log.error("dynamodb_get_failed", pk=key.get("PK"), error=str(e))
        raise PersistenceError(
            operation="get",
            table_name=settings.dynamodb_table_name,
            error_message=str(e),
        ) from e
    return response.get("Item")


def query_all(**query_params: Any) -> list[dict[str, Any]]:
    """
    Run a query and follow LastEvaluatedKey until exhausted or Limit reached.

    Raises:
        PersistenceError: On DynamoDB operation failure
    """
    settings = get_settings()
    table = get_table()
    limit = query_params.get("Limit")
    try:
        response = table.query(**query_params)
        items = response.get("Items", [])
        while "LastEvaluatedKey" in response and (limit is None or len(items) < limit):
            query_params["ExclusiveStartKey"] = response["LastEvaluatedKey"]
            response = table.query(**query_params)
            items.extend(response.get("Items", []))
    except (ClientError, BotoCoreError) as e:
        log.error(
            "dynamodb_query_failed",
            index=query_params.get("IndexName"),
            error=str(e),
        )
        raise PersistenceError(
            operation="query",
            table_name=settings.dynamodb_table_name,
            error_message=str(e),
        ) from e
    return items[:limit] if limit else items
