"""
Ledger client.

The orchestrator talks to the chain through a signing gateway that exposes
transaction submission, receipt lookup and the per-user task read model.
The read model is eventually consistent with submitted transactions.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from beatstudio.errors import (
    ChainUnavailableError,
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    LedgerError,
    UserRejectedError,
)
from beatstudio.tasks.models import Mode, RequestParams

logger = structlog.get_logger(__name__)

WEI_PER_ETHER = 10**18

# Used when the gateway cannot report the on-chain fee
DEFAULT_FEES_WEI = {
    Mode.SIMPLE: 10**15,  # 0.001 ether
    Mode.ADVANCED: 2 * 10**15,  # 0.002 ether
}

_ERROR_CODES: dict[str, type[LedgerError]] = {
    "user_rejected": UserRejectedError,
    "insufficient_balance": InsufficientBalanceError,
    "insufficient_funds": InsufficientBalanceError,
    "chain_unavailable": ChainUnavailableError,
}


@dataclass
class TransactionReceipt:
    """Mined transaction outcome."""

    transaction_hash: str
    success: bool
    block_number: int | None = None


class LedgerClient(Protocol):
    """Operations the orchestrator needs from the ledger."""

    async def broadcast_generation_request(
        self, user_id: str, task_id: str, params: RequestParams, fee_wei: int
    ) -> str: ...

    async def wait_for_receipt(self, transaction_hash: str) -> TransactionReceipt: ...

    async def get_all_task_ids(self, user_id: str) -> list[str]: ...

    async def get_completed_task_ids(self, user_id: str) -> list[str]: ...

    async def get_generation_fee(self, mode: Mode) -> int: ...


class _ReceiptPending(Exception):
    """Receipt not available yet."""


def classify_ledger_error(status_code: int | None, body: Any, message: str) -> LedgerError:
    """Map a gateway failure onto the ledger error taxonomy."""
    code = None
    if isinstance(body, dict):
        error = body.get("error")
        code = error.get("code") if isinstance(error, dict) else body.get("code")
        message = (error.get("message") if isinstance(error, dict) else None) or message

    if isinstance(code, str) and code.lower() in _ERROR_CODES:
        return _ERROR_CODES[code.lower()](message)

    lowered = message.lower()
    if "rejected" in lowered or "denied" in lowered:
        return UserRejectedError("Transaction rejected by user")
    if "insufficient" in lowered:
        return InsufficientBalanceError(message)
    if status_code == 402:
        return InsufficientBalanceError(message)
    if status_code in (401, 403, 409):
        return UserRejectedError(message)
    return ChainUnavailableError(message)


class HttpLedgerClient:
    """
    Ledger gateway client over HTTP.

    Endpoints:
        POST /transactions/generation
        GET  /transactions/{hash}/receipt
        GET  /users/{user}/balance
        GET  /users/{user}/tasks
        GET  /users/{user}/tasks/completed
        GET  /fees/{mode}
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 15.0,
        receipt_timeout_seconds: float = 60.0,
        receipt_poll_interval_seconds: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.receipt_timeout = receipt_timeout_seconds
        self.receipt_poll_interval = receipt_poll_interval_seconds
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers=headers,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get_json(self, path: str) -> Any:
        response = await self._client.get(path)
        response.raise_for_status()
        return response.json()

    async def _read(self, path: str) -> dict[str, Any]:
        try:
            data = await self._get_json(path)
        except (httpx.HTTPError, ValueError) as e:
            raise ChainUnavailableError(f"Ledger read failed for {path}: {e}") from e
        if not isinstance(data, dict):
            raise ChainUnavailableError(f"Ledger read for {path} returned no JSON object")
        return data

    async def get_balance(self, user_id: str) -> int:
        data = await self._read(f"/users/{user_id}/balance")
        return int(data["balance"])

    async def broadcast_generation_request(
        self, user_id: str, task_id: str, params: RequestParams, fee_wei: int
    ) -> str:
        """
        Sign and broadcast the generation payment transaction.

        Returns:
            Transaction hash

        Raises:
            InsufficientBalanceError: If the balance does not cover the fee
            UserRejectedError: If signing was refused
            ChainUnavailableError: If the gateway or chain cannot be reached
        """
        balance = await self.get_balance(user_id)
        if balance < fee_wei:
            raise InsufficientBalanceError(
                f"Insufficient balance. Required: {fee_wei / WEI_PER_ETHER:.4f}, "
                f"Available: {balance / WEI_PER_ETHER:.4f}",
                context={"required_wei": fee_wei, "balance_wei": balance},
            )

        body = {
            "from": user_id,
            "taskId": task_id,
            "mode": params.mode.value,
            "prompt": params.prompt,
            "style": params.style,
            "instrumental": params.instrumental,
            "title": params.title or "",
            "vocalGender": params.vocal_gender or "",
            "value": str(fee_wei),
        }
        try:
            response = await self._client.post("/transactions/generation", json=body)
        except httpx.RequestError as e:
            raise ChainUnavailableError(f"Ledger gateway unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            raise classify_ledger_error(
                response.status_code, payload, f"HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ChainUnavailableError("Ledger gateway returned invalid JSON") from e
        tx_hash = data.get("transactionHash") if isinstance(data, dict) else None
        if not tx_hash:
            raise ChainUnavailableError("Ledger gateway returned no transaction hash")

        logger.info("Generation transaction broadcast", task_id=task_id, tx_hash=tx_hash)
        return tx_hash

    async def _get_receipt(self, transaction_hash: str) -> TransactionReceipt:
        response = await self._client.get(f"/transactions/{transaction_hash}/receipt")
        if response.status_code == 404:
            raise _ReceiptPending(transaction_hash)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Receipt response is not a JSON object")
        status = data.get("status")
        if status is None:
            raise _ReceiptPending(transaction_hash)
        return TransactionReceipt(
            transaction_hash=transaction_hash,
            success=status in ("success", 1, "0x1", True),
            block_number=data.get("blockNumber"),
        )

    async def wait_for_receipt(self, transaction_hash: str) -> TransactionReceipt:
        """
        Poll for the transaction receipt until mined or the wait budget is spent.

        Raises:
            ConfirmationTimeoutError: No receipt within the wait budget
            ChainUnavailableError: The gateway kept failing
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.receipt_timeout),
                wait=wait_fixed(self.receipt_poll_interval),
                retry=retry_if_exception_type((_ReceiptPending, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    return await self._get_receipt(transaction_hash)
        except _ReceiptPending as e:
            raise ConfirmationTimeoutError(
                f"No receipt for {transaction_hash} within {self.receipt_timeout}s"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ChainUnavailableError(f"Receipt lookup failed: {e}") from e
        raise ConfirmationTimeoutError(f"No receipt for {transaction_hash}")

    async def get_all_task_ids(self, user_id: str) -> list[str]:
        data = await self._read(f"/users/{user_id}/tasks")
        return [str(t) for t in data.get("taskIds", [])]

    async def get_completed_task_ids(self, user_id: str) -> list[str]:
        data = await self._read(f"/users/{user_id}/tasks/completed")
        return [str(t) for t in data.get("taskIds", [])]

    async def get_generation_fee(self, mode: Mode) -> int:
        """Fee in wei for a mode, falling back to the default when unreadable."""
        try:
            data = await self._read(f"/fees/{mode.value}")
            return int(data["fee"])
        except (ChainUnavailableError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Generation fee unavailable, using default",
                mode=mode.value,
                fee_wei=DEFAULT_FEES_WEI[mode],
                error=str(e),
            )
            return DEFAULT_FEES_WEI[mode]
