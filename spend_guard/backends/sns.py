"""
AWS SNS adapters.

SnsBroadcastPublisher publishes the alert to a topic; SnsPushBackend
manages APNS platform endpoints. Both translate botocore failures into
the pipeline error taxonomy.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError, ReadTimeoutError
from loguru import logger

from ..core.errors import BackendError, NotFoundError, SpendGuardError, TransientBackendError, ValidationError
from .base import EndpointAttributes, PlatformApplicationStatus

DEFAULT_REGION = "us-east-1"

_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "KMSThrottling",
}
_NOT_FOUND_CODES = {"NotFound", "NotFoundException", "ResourceNotFoundException"}

_EXISTING_ENDPOINT = re.compile(r"Endpoint (arn:aws:sns:\S+) already exists")


def translate_client_error(error: Exception, operation: str) -> SpendGuardError:
    """Map a botocore exception onto the error taxonomy."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        message = error.response.get("Error", {}).get("Message", str(error))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in _NOT_FOUND_CODES or status == 404:
            return NotFoundError(f"{operation}: {message}")
        if code in _TRANSIENT_CODES or status == 429 or status >= 500:
            return TransientBackendError(f"{operation}: {code} {message}")
        if code in ("InvalidParameter", "InvalidParameterValue"):
            return ValidationError(f"{operation}: {message}")
        return BackendError(f"{operation}: {code} {message}")
    if isinstance(error, (BotoConnectionError, ReadTimeoutError)):
        return TransientBackendError(f"{operation}: {error}")
    return BackendError(f"{operation}: {error}")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable platform application timestamp {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SnsBroadcastPublisher:
    """Publishes alerts to an SNS topic."""

    def __init__(self, client: Any = None, region: str = DEFAULT_REGION):
        self.client = client or boto3.client("sns", region_name=region)

    def publish(
        self,
        topic: str,
        message: str,
        subject: Optional[str] = None,
        protocol_messages: Optional[Dict[str, str]] = None
    ) -> str:
        """Publish to ``topic``; per-protocol messages use a JSON message structure."""
        request: Dict[str, Any] = {"TopicArn": topic}
        if protocol_messages:
            structured = dict(protocol_messages)
            structured.setdefault("default", message)
            request["Message"] = json.dumps(structured)
            request["MessageStructure"] = "json"
        else:
            request["Message"] = message
        if subject:
            # SNS subjects are limited to 100 characters
            request["Subject"] = subject[:100]
        try:
            response = self.client.publish(**request)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "publish") from e
        return response["MessageId"]


class SnsPushBackend:
    """APNS platform endpoints on one SNS platform application."""

    def __init__(
        self,
        platform_application_arn: str,
        client: Any = None,
        region: str = DEFAULT_REGION,
        sandbox: bool = False
    ):
        if not platform_application_arn:
            raise ValueError("platform_application_arn is required")
        self.platform_application_arn = platform_application_arn
        self.sandbox = sandbox
        self.client = client or boto3.client("sns", region_name=region)

    def create_or_reuse_endpoint(self, token: str, custom_user_data: Optional[str] = None) -> str:
        """Create the endpoint for ``token``, or reuse the one SNS already has.

        SNS returns the existing ARN when attributes match. When they differ
        it rejects the call naming the existing ARN, which is then reused
        and re-enabled.
        """
        request: Dict[str, Any] = {
            "PlatformApplicationArn": self.platform_application_arn,
            "Token": token,
        }
        if custom_user_data:
            request["CustomUserData"] = custom_user_data
        try:
            return self.client.create_platform_endpoint(**request)["EndpointArn"]
        except ClientError as e:
            message = e.response.get("Error", {}).get("Message", "")
            match = _EXISTING_ENDPOINT.search(message)
            if match is None:
                raise translate_client_error(e, "create_platform_endpoint") from e
            endpoint_arn = match.group(1)
            logger.info(f"Reusing existing platform endpoint for token {token[:8]}...")
            attributes = {"Enabled": "true", "Token": token}
            if custom_user_data:
                attributes["CustomUserData"] = custom_user_data
            self._set_attributes(endpoint_arn, attributes)
            return endpoint_arn
        except BotoCoreError as e:
            raise translate_client_error(e, "create_platform_endpoint") from e

    def update_endpoint(self, endpoint_ref: str, token: str) -> None:
        self._set_attributes(endpoint_ref, {"Token": token, "Enabled": "true"})

    def delete_endpoint(self, endpoint_ref: str) -> None:
        try:
            self.client.delete_endpoint(EndpointArn=endpoint_ref)
        except (ClientError, BotoCoreError) as e:
            error = translate_client_error(e, "delete_endpoint")
            if isinstance(error, NotFoundError):
                return
            raise error from e

    def get_endpoint_attributes(self, endpoint_ref: str) -> EndpointAttributes:
        try:
            response = self.client.get_endpoint_attributes(EndpointArn=endpoint_ref)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "get_endpoint_attributes") from e
        attributes = response.get("Attributes", {})
        return EndpointAttributes(
            endpoint_ref=endpoint_ref,
            enabled=attributes.get("Enabled") == "true",
            token=attributes.get("Token"),
            custom_user_data=attributes.get("CustomUserData")
        )

    def publish_to_endpoint(self, endpoint_ref: str, payload: str) -> str:
        platform = "APNS_SANDBOX" if self.sandbox else "APNS"
        try:
            response = self.client.publish(
                TargetArn=endpoint_ref,
                Message=json.dumps({platform: payload}),
                MessageStructure="json"
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "publish_to_endpoint") from e
        return response["MessageId"]

    def get_platform_application_status(self) -> PlatformApplicationStatus:
        try:
            response = self.client.get_platform_application_attributes(
                PlatformApplicationArn=self.platform_application_arn
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "get_platform_application_attributes") from e
        attributes = response.get("Attributes", {})
        return PlatformApplicationStatus(
            enabled=attributes.get("Enabled") == "true",
            certificate_expiry=_parse_timestamp(attributes.get("AppleCertificateExpiryDate")),
            creation_time=_parse_timestamp(attributes.get("CreationTime"))
        )

    def _set_attributes(self, endpoint_ref: str, attributes: Dict[str, str]) -> None:
        try:
            self.client.set_endpoint_attributes(EndpointArn=endpoint_ref, Attributes=attributes)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "set_endpoint_attributes") from e
