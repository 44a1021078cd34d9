"""
Unit tests for settlement sinks.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from shared.errors import ExternalServiceError
from shared.retry import RetryError
from service_gateway.app.receipts import HttpSettlementClient, LoggingSettlement, QueueItem


def make_client(handler) -> HttpSettlementClient:
    transport = httpx.MockTransport(handler)
    return HttpSettlementClient(
        "http://billing.internal/",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.fixture
def receipt():
    return QueueItem(id="rc-1", payload={"job_id": "job-9", "units": 120}, kind="receipt")


@pytest.mark.asyncio
async def test_posts_item_to_invoice_endpoint(receipt):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"invoice_id": "inv-1"})

    client = make_client(handler)
    result = await client.submit(receipt)

    assert result == {"invoice_id": "inv-1"}
    assert str(seen[0].url) == "http://billing.internal/invoice"
    body = json.loads(seen[0].content)
    assert body["job"] == "job-9"
    assert body["id"] == "rc-1"
    assert body["kind"] == "receipt"
    await client.close()


@pytest.mark.asyncio
async def test_server_errors_are_retried(receipt):
    statuses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={})

    client = make_client(handler)
    with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock):
        await client(receipt)
    await client.close()


@pytest.mark.asyncio
async def test_persistent_server_error_exhausts_retries(receipt):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    client = make_client(handler)
    with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(RetryError):
            await client.submit(receipt)

    assert len(calls) == 3
    await client.close()


@pytest.mark.asyncio
async def test_client_error_is_not_retried(receipt):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, json={"error": "bad item"})

    client = make_client(handler)
    with pytest.raises(ExternalServiceError) as exc_info:
        await client.submit(receipt)

    assert exc_info.value.details["status_code"] == 422
    assert len(calls) == 1
    await client.close()


@pytest.mark.asyncio
async def test_logging_settlement_accepts_items(receipt):
    sink = LoggingSettlement()

    await sink(receipt)
    await sink.close()
