"""
Shared plumbing for payment channel adapters.

Adapters turn a channel's raw payload into a ``PaymentEvent`` or raise a
``ChannelError``. Channel errors are local and terminal for that payload:
they are logged and never reach the reconciliation engine.
"""
import time
from abc import ABC
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from order_payments.core.domain import PaymentEvent, SourceChannel
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class ChannelError(Exception):
    """Base exception for channel adapters."""

    retryable = False

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize channel error.

        Args:
            message: Error message
            channel: Adapter or gateway name
            details: Non-secret context for logs and responses
        """
        super().__init__(message)
        self.channel = channel
        self.details = details or {}


class PayloadValidationError(ChannelError):
    """Raised when a payload is missing fields or cannot be parsed."""

    pass


class SignatureVerificationError(ChannelError):
    """Raised when a push payload's origin cannot be verified."""

    pass


class GatewayUnavailableError(ChannelError):
    """Raised on timeouts, connection errors and 5xx/429 responses."""

    retryable = True


class GatewayResponseError(ChannelError):
    """Raised when a gateway answers with an error or an unusable body."""

    pass


class ChannelAdapter(ABC):
    """Base class for adapters: schema validation with consistent logging."""

    name: str = "channel"
    source_channel: SourceChannel

    def _validate(self, schema: Type[SchemaT], payload: Any) -> SchemaT:
        """
        Validate ``payload`` against ``schema``.

        Raises:
            PayloadValidationError: With the pydantic error summary in details
        """
        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            errors = [
                {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                for err in e.errors()
            ]
            raise self._invalid(f"Invalid {self.name} payload", errors=errors) from e

    def _event(self, **fields: Any) -> PaymentEvent:
        """
        Build the normalized event; gateway values that break its bounds
        (an oversized order id, a malformed currency) are payload errors.
        """
        return self._validate(PaymentEvent, fields)

    def _invalid(self, message: str, **details: Any) -> PayloadValidationError:
        logger.warning(
            "channel_payload_rejected",
            channel=self.name,
            source_channel=self.source_channel.value,
            reason=message,
            **details,
        )
        metrics.record_invalid_payload(self.source_channel.value, "payload_validation")
        return PayloadValidationError(message, channel=self.name, details=details)


class GatewayClient:
    """
    JSON-over-HTTPS client for a payment gateway.

    Features:
    - Bounded per-request timeout
    - Retry with exponential backoff for transient failures only
    - Error classification into retryable and terminal channel errors
    - Call metrics per gateway and operation
    """

    gateway: str = "gateway"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        retry_wait_seconds: float = 1.0,
    ):
        """
        Initialize gateway client.

        Args:
            base_url: Gateway API root
            timeout_seconds: Per-request timeout
            http_client: Shared client (one is created and owned if omitted)
            max_attempts: Attempts for retryable failures
            retry_wait_seconds: Base of the exponential backoff
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Send one request with retries and return the decoded JSON body.

        Raises:
            GatewayUnavailableError: If every attempt failed transiently
            GatewayResponseError: On a 4xx answer or a non-JSON body
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnavailableError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, min=0, max=16),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send_once(method, path, operation, headers, **kwargs)
        raise GatewayUnavailableError("unreachable", channel=self.gateway)  # pragma: no cover

    async def _send_once(
        self,
        method: str,
        path: str,
        operation: str,
        headers: Optional[Dict[str, str]],
        **kwargs: Any,
    ) -> Dict[str, Any]:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        start = time.time()
        try:
            response = await self.http_client.request(
                method,
                url,
                headers={"Accept": "application/json", **(headers or {})},
                timeout=self.timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(self.gateway, operation, "timeout", time.time() - start)
            logger.warning("gateway_timeout", gateway=self.gateway, operation=operation)
            raise GatewayUnavailableError(
                f"{self.gateway} {operation} timed out", channel=self.gateway
            ) from e
        except httpx.TransportError as e:
            metrics.record_gateway_call(self.gateway, operation, "unreachable", time.time() - start)
            logger.warning(
                "gateway_unreachable", gateway=self.gateway, operation=operation, error=str(e)
            )
            raise GatewayUnavailableError(
                f"{self.gateway} {operation} failed: {e}", channel=self.gateway
            ) from e

        duration = time.time() - start
        metrics.record_gateway_call(self.gateway, operation, str(response.status_code), duration)

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "gateway_transient_error",
                gateway=self.gateway,
                operation=operation,
                status_code=response.status_code,
            )
            raise GatewayUnavailableError(
                f"{self.gateway} {operation} returned {response.status_code}",
                channel=self.gateway,
                details={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayResponseError(
                f"{self.gateway} {operation} returned a non-JSON body",
                channel=self.gateway,
                details={"status_code": response.status_code},
            ) from e

        if response.status_code >= 400:
            logger.error(
                "gateway_request_rejected",
                gateway=self.gateway,
                operation=operation,
                status_code=response.status_code,
            )
            raise GatewayResponseError(
                f"{self.gateway} {operation} returned {response.status_code}",
                channel=self.gateway,
                details={"status_code": response.status_code, "body": body},
            )

        if not isinstance(body, dict):
            raise GatewayResponseError(
                f"{self.gateway} {operation} returned an unexpected body",
                channel=self.gateway,
            )

        logger.debug(
            "gateway_request_completed",
            gateway=self.gateway,
            operation=operation,
            duration_seconds=duration,
        )
        return body
