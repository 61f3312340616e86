import json
import re
from decimal import Decimal

import httpx
import pytest

from orderflow.clients.momo_client import FAILED_TO_PROCESS
from orderflow.errors import ValidationError

from conftest import MOMO_BASE_URL, momo_gateway, provider_answer


@pytest.mark.parametrize("number", ["0241234567", "+233241234567", "233241234567", "024 123 4567", "(024)-123-4567"])
def test_valid_phone_numbers(number):
    assert momo_gateway(provider_answer("pending")).validate_phone_number(number)


@pytest.mark.parametrize("number", ["", "abc", "1", "+0241234567", "024123456789012345"])
def test_invalid_phone_numbers(number):
    assert not momo_gateway(provider_answer("pending")).validate_phone_number(number)


@pytest.mark.parametrize("number, expected", [
    ("0241234567", "+233241234567"),
    ("024 123 4567", "+233241234567"),
    ("233241234567", "+233233241234567"),
    ("+233241234567", "+233241234567"),
])
def test_format_phone_number(number, expected):
    assert momo_gateway(provider_answer("pending")).format_phone_number(number) == expected


def test_format_rejects_malformed_number():
    with pytest.raises(ValidationError):
        momo_gateway(provider_answer("pending")).format_phone_number("not-a-number")


def test_reference_format():
    gateway = momo_gateway(provider_answer("pending"))
    first, second = gateway.new_reference(), gateway.new_reference()
    assert re.match(r"^MOMO_\d+_[0-9A-F]{8}$", first)
    assert first != second


@pytest.mark.asyncio
async def test_initiate_sends_request_and_reports_pending():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "pending", "message": "Awaiting approval"})

    gateway = momo_gateway(handler)
    result = await gateway.initiate(Decimal("65.50"), "0241234567", "Ama", "ORD-ABCDEF01", provider_ref="MOMO_1_AAAAAAAA")

    assert result.accepted is True
    assert result.sub_status == "pending"
    assert result.provider_ref == "MOMO_1_AAAAAAAA"
    assert result.unavailable is False

    request = seen[0]
    assert str(request.url) == f"{MOMO_BASE_URL}/payments"
    assert request.headers["X-Api-Key"] == gateway.config.api_key
    body = json.loads(request.content)
    assert body["reference"] == "MOMO_1_AAAAAAAA"
    assert body["amount"] == "65.50"
    assert body["phone_number"] == "+233241234567"
    assert body["currency"] == "GHS"


@pytest.mark.asyncio
async def test_initiate_completed_with_amount():
    handler = provider_answer("successful", transaction_id="TX-77", amount="65.50")

    result = await momo_gateway(handler).initiate(Decimal("65.50"), "0241234567", "Ama", "ORD-1")

    assert result.sub_status == "completed"
    assert result.provider_transaction_id == "TX-77"
    assert result.amount == Decimal("65.50")


@pytest.mark.asyncio
async def test_initiate_declined_by_provider():
    def handler(request):
        return httpx.Response(400, json={"status": "failed", "message": "Insufficient funds"})

    result = await momo_gateway(handler).initiate(Decimal("10"), "0241234567", "Ama", "ORD-1")

    assert result.accepted is False
    assert result.unavailable is False
    assert result.sub_status == "failed"
    assert result.message == "Insufficient funds"


@pytest.mark.asyncio
async def test_unknown_provider_status_is_failure():
    result = await momo_gateway(provider_answer("on_hold")).initiate(Decimal("10"), "0241234567", "Ama", "ORD-1")

    assert result.sub_status == "failed"
    assert result.accepted is False


@pytest.mark.asyncio
async def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = await momo_gateway(handler).initiate(Decimal("10"), "0241234567", "Ama", "ORD-1", provider_ref="MOMO_1_BBBBBBBB")

    assert result.unavailable is True
    assert result.accepted is False
    assert result.sub_status == "failed"
    assert result.message == FAILED_TO_PROCESS
    assert result.provider_ref == "MOMO_1_BBBBBBBB"


@pytest.mark.asyncio
async def test_server_error_is_unavailable():
    def handler(request):
        return httpx.Response(502, text="Bad gateway")

    result = await momo_gateway(handler).initiate(Decimal("10"), "0241234567", "Ama", "ORD-1")

    assert result.unavailable is True


@pytest.mark.asyncio
async def test_initiate_with_bad_phone_makes_no_call():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"status": "pending"})

    with pytest.raises(ValidationError):
        await momo_gateway(handler).initiate(Decimal("10"), "not-a-phone", "Ama", "ORD-1")
    assert calls == []


@pytest.mark.asyncio
async def test_check_status_queries_reference():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "completed", "transaction_id": "TX-5"})

    result = await momo_gateway(handler).check_status("MOMO_1_CCCCCCCC")

    assert seen[0].method == "GET"
    assert str(seen[0].url) == f"{MOMO_BASE_URL}/payments/MOMO_1_CCCCCCCC"
    assert result.sub_status == "completed"
    assert result.provider_ref == "MOMO_1_CCCCCCCC"
