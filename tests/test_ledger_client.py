"""Tests for the ledger gateway client."""

import json

import httpx
import pytest

from beatstudio.clients.ledger import (
    DEFAULT_FEES_WEI,
    HttpLedgerClient,
    classify_ledger_error,
)
from beatstudio.errors import (
    ChainUnavailableError,
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    UserRejectedError,
)
from beatstudio.tasks.models import Mode, RequestParams

BASE_URL = "https://ledger.test"
USER = "0xaaaa000000000000000000000000000000000001"


def make_client(handler) -> HttpLedgerClient:
    return HttpLedgerClient(
        base_url=BASE_URL,
        api_key="ledger-key",
        receipt_timeout_seconds=0.3,
        receipt_poll_interval_seconds=0.05,
        client=httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
    )


class TestClassifyLedgerError:
    """Test gateway error classification."""

    def test_error_code_wins(self):
        error = classify_ledger_error(
            400, {"error": {"code": "insufficient_funds", "message": "not enough"}}, "HTTP 400"
        )
        assert isinstance(error, InsufficientBalanceError)
        assert error.message == "not enough"

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("User denied transaction signature", UserRejectedError),
            ("Transaction rejected", UserRejectedError),
            ("insufficient funds for gas", InsufficientBalanceError),
            ("nonce too low", ChainUnavailableError),
        ],
    )
    def test_message_keywords(self, message, expected):
        assert isinstance(classify_ledger_error(500, {"message": message}, message), expected)

    def test_status_codes(self):
        assert isinstance(classify_ledger_error(402, None, "HTTP 402"), InsufficientBalanceError)
        assert isinstance(classify_ledger_error(403, None, "HTTP 403"), UserRejectedError)
        assert isinstance(classify_ledger_error(502, None, "HTTP 502"), ChainUnavailableError)


class TestBroadcast:
    """Test payment broadcast."""

    @pytest.mark.asyncio
    async def test_broadcast_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == f"/users/{USER}/balance":
                return httpx.Response(200, json={"balance": str(10**18)})
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"transactionHash": "0xabc"})

        client = make_client(handler)
        tx_hash = await client.broadcast_generation_request(
            USER, "t1", RequestParams(prompt="lofi beat"), 10**15
        )

        assert tx_hash == "0xabc"
        assert seen["body"]["taskId"] == "t1"
        assert seen["body"]["value"] == str(10**15)
        assert seen["body"]["mode"] == "simple"
        await client.close()

    @pytest.mark.asyncio
    async def test_balance_checked_before_broadcast(self):
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                posted.append(request)
            return httpx.Response(200, json={"balance": "10"})

        client = make_client(handler)
        with pytest.raises(InsufficientBalanceError, match="Insufficient balance"):
            await client.broadcast_generation_request(
                USER, "t1", RequestParams(prompt="x"), 10**15
            )
        assert posted == []

    @pytest.mark.asyncio
    async def test_rejected_signature(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={"balance": str(10**18)})
            return httpx.Response(
                409, json={"error": {"code": "user_rejected", "message": "User rejected"}}
            )

        client = make_client(handler)
        with pytest.raises(UserRejectedError):
            await client.broadcast_generation_request(
                USER, "t1", RequestParams(prompt="x"), 10**15
            )

    @pytest.mark.asyncio
    async def test_gateway_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(ChainUnavailableError):
            await client.broadcast_generation_request(
                USER, "t1", RequestParams(prompt="x"), 10**15
            )

    @pytest.mark.asyncio
    async def test_non_object_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={"balance": str(10**18)})
            return httpx.Response(200, json=["0xabc"])

        client = make_client(handler)
        with pytest.raises(ChainUnavailableError):
            await client.broadcast_generation_request(
                USER, "t1", RequestParams(prompt="x"), 10**15
            )


class TestReceipts:
    """Test receipt waiting."""

    @pytest.mark.asyncio
    async def test_receipt_after_pending(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(404)
            if calls["n"] == 2:
                return httpx.Response(200, json={"status": None})
            return httpx.Response(200, json={"status": "success", "blockNumber": 42})

        client = make_client(handler)
        receipt = await client.wait_for_receipt("0xabc")

        assert receipt.success is True
        assert receipt.block_number == 42
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_reverted_receipt(self):
        client = make_client(lambda request: httpx.Response(200, json={"status": "0x0"}))

        receipt = await client.wait_for_receipt("0xabc")

        assert receipt.success is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = make_client(lambda request: httpx.Response(404))

        with pytest.raises(ConfirmationTimeoutError):
            await client.wait_for_receipt("0xabc")

    @pytest.mark.asyncio
    async def test_gateway_error(self):
        client = make_client(lambda request: httpx.Response(500))

        with pytest.raises(ChainUnavailableError):
            await client.wait_for_receipt("0xabc")

    @pytest.mark.asyncio
    async def test_non_object_receipt(self):
        client = make_client(lambda request: httpx.Response(200, json=[1]))

        with pytest.raises(ChainUnavailableError):
            await client.wait_for_receipt("0xabc")


class TestReadModel:
    """Test task id reads and fee lookup."""

    @pytest.mark.asyncio
    async def test_task_ids(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/completed"):
                return httpx.Response(200, json={"taskIds": ["t1"]})
            return httpx.Response(200, json={"taskIds": ["t1", 2]})

        client = make_client(handler)

        assert await client.get_all_task_ids(USER) == ["t1", "2"]
        assert await client.get_completed_task_ids(USER) == ["t1"]

    @pytest.mark.asyncio
    async def test_read_failure(self):
        client = make_client(lambda request: httpx.Response(503))

        with pytest.raises(ChainUnavailableError):
            await client.get_all_task_ids(USER)

    @pytest.mark.asyncio
    async def test_non_object_read(self):
        client = make_client(lambda request: httpx.Response(200, json=["t1"]))

        with pytest.raises(ChainUnavailableError):
            await client.get_all_task_ids(USER)
        assert await client.get_generation_fee(Mode.SIMPLE) == DEFAULT_FEES_WEI[Mode.SIMPLE]

    @pytest.mark.asyncio
    async def test_fee(self):
        client = make_client(lambda request: httpx.Response(200, json={"fee": "3000"}))

        assert await client.get_generation_fee(Mode.ADVANCED) == 3000

    @pytest.mark.asyncio
    async def test_fee_falls_back_to_default(self):
        client = make_client(lambda request: httpx.Response(500))

        assert await client.get_generation_fee(Mode.SIMPLE) == DEFAULT_FEES_WEI[Mode.SIMPLE]
