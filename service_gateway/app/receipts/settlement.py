"""
Settlement sinks for drained queue items.
"""

from typing import Optional

import httpx

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from .durable_queue import QueueItem


class LoggingSettlement:
    """Sink used when no settlement service is configured."""

    def __init__(self):
        self.logger = get_logger("gateway.settlement")

    async def __call__(self, item: QueueItem) -> None:
        self.logger.info("Settled item", item_id=item.id, kind=item.kind)

    async def close(self) -> None:
        return None


class HttpSettlementClient:
    """Client forwarding drained items to the billing service."""

    def __init__(self, settlement_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.settlement_url = settlement_url.rstrip("/")
        self.logger = get_logger("gateway.settlement_client")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self, item: QueueItem) -> None:
        await self.submit(item)

    @retry_on_exception((httpx.HTTPError,), config=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0))
    async def submit(self, item: QueueItem) -> dict:
        """Post one item for invoicing."""
        payload = {
            "job": item.payload.get("job_id") or item.payload.get("job") or "unknown",
            "id": item.id,
            "kind": item.kind,
            "payload": item.payload,
        }
        response = await self._client.post(f"{self.settlement_url}/invoice", json=payload)

        if response.status_code >= 500:
            # Retried by the decorator
            response.raise_for_status()
        if response.status_code != 200:
            raise ExternalServiceError(
                "settlement",
                f"unexpected status {response.status_code}",
                details={"status_code": response.status_code, "item_id": item.id}
            )

        self.logger.debug("Item invoiced", item_id=item.id)
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()
