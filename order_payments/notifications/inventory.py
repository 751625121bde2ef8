"""Inventory service client: releases stock held for a cancelled order."""
import time
from typing import Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_payments.monitoring.metrics import metrics
from order_payments.notifications.base import DeliveryError

logger = structlog.get_logger(__name__)


class InventoryUnavailableError(DeliveryError):
    pass


class InventoryClient:
    """
    Calls ``POST {base_url}/reservations/release``.

    The inventory service treats a repeated release for the same order as a
    no-op, which keeps dispatcher retries safe.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    @retry(
        retry=retry_if_exception_type(InventoryUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def release(self, order_id: str, reason: Optional[str] = None) -> None:
        """
        Release every reservation held by ``order_id``.

        Raises:
            DeliveryError: If the inventory service rejected the release
        """
        start = time.time()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/reservations/release",
                json={"order_id": order_id, "reason": reason or "order_cancelled"},
            )
        except httpx.HTTPError as e:
            metrics.record_gateway_call("inventory", "release", "unreachable", time.time() - start)
            raise InventoryUnavailableError(f"Inventory service unreachable: {e}") from e

        metrics.record_gateway_call(
            "inventory", "release", str(response.status_code), time.time() - start
        )
        if response.status_code >= 500:
            raise InventoryUnavailableError(
                f"Inventory service returned {response.status_code}"
            )
        if response.status_code >= 400 and response.status_code != 404:
            raise DeliveryError(
                f"Inventory release rejected with {response.status_code}",
                details={"order_id": order_id},
            )

        # 404: nothing was reserved for this order
        logger.info("inventory_released", order_id=order_id, status_code=response.status_code)
