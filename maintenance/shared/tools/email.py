"""
Email Tools

Notification dispatch through SES templated email. The engine only
depends on the NotificationDispatcher protocol; SES is the production
implementation and tests inject their own.
"""

import json
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from email_validator import EmailNotValidError, validate_email
import structlog

from maintenance.shared.config import get_settings

log = structlog.get_logger()


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a single notification send."""

    ok: bool
    message_id: str | None = None
    error: str | None = None


class NotificationDispatcher(Protocol):
    def send(self, to: str, subject: str, template: str, data: dict[str, Any]) -> DispatchResult:
        ...


def _get_client():
    """Get SES client."""
    settings = get_settings()
    return boto3.client("ses", **settings.ses_config)


def validate_email_address(email: str) -> bool:
    """RFC syntax check only; deliverability is left to SES."""
    try:
        validate_email(email, check_deliverability=False)
        return True
    except EmailNotValidError:
        return False


class SESNotificationDispatcher:
    """
    Sends portal notifications as SES templated emails.

    SES templates are named after the engine's template identifiers with
    an optional prefix, e.g. "maintenance-work_reminder".
    """

    def __init__(
        self,
        *,
        template_prefix: str = "",
        from_address: str | None = None,
        from_name: str | None = None,
        configuration_set: str | None = None,
        client: Any = None,
    ) -> None:
        settings = get_settings()
        self.template_prefix = template_prefix
        self.from_address = from_address or settings.ses_from_address
        self.from_name = from_name or settings.ses_from_name
        self.configuration_set = configuration_set or settings.ses_configuration_set
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_client()
        return self._client

    def send(self, to: str, subject: str, template: str, data: dict[str, Any]) -> DispatchResult:
        """
        Send one templated email.

        Never raises for transport problems: failures come back as
        DispatchResult(ok=False) so the caller can record the attempt.
        """
        if not to or not validate_email_address(to):
            log.warning("dispatch_invalid_recipient", template=template)
            return DispatchResult(ok=False, error="invalid recipient address")

        source = f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        send_params: dict[str, Any] = {
            "Source": source,
            "Destination": {"ToAddresses": [to]},
            "Template": f"{self.template_prefix}{template}",
            "TemplateData": json.dumps({"subject": subject, **data}, default=str),
        }
        if self.configuration_set:
            send_params["ConfigurationSetName"] = self.configuration_set

        log.info("sending_templated_email", to=to, template=template)

        try:
            response = self.client.send_templated_email(**send_params)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            error_message = e.response["Error"]["Message"]
            log.error(
                "ses_templated_send_failed",
                to=to,
                template=template,
                error_code=error_code,
                error_message=error_message,
            )
            return DispatchResult(ok=False, error=f"{error_code}: {error_message}")
        except BotoCoreError as e:
            log.error("ses_transport_failed", to=to, template=template, error=str(e))
            return DispatchResult(ok=False, error=str(e))

        message_id = response["MessageId"]
        log.info("templated_email_sent", message_id=message_id, to=to, template=template)
        return DispatchResult(ok=True, message_id=message_id)
