"""Shared test configuration and fixtures for all tests."""

import asyncio
import os
from typing import Any

import pytest

# Mock environment variables for testing
os.environ.setdefault("GENERATION_API_KEY", "test-key-123")
os.environ.setdefault("ENVIRONMENT", "development")

from beatstudio.clients.generation import ServiceStatusReport, normalize_status_payload  # noqa: E402
from beatstudio.clients.ledger import DEFAULT_FEES_WEI, TransactionReceipt  # noqa: E402
from beatstudio.clients.storage import ArtifactMetadata, UploadResult  # noqa: E402
from beatstudio.core.item_cache import ItemCacheStore, MemoryCacheBackend  # noqa: E402
from beatstudio.errors import LedgerError, PollTransientError  # noqa: E402
from beatstudio.orchestration.orchestrator import GenerationOrchestrator  # noqa: E402
from beatstudio.tasks.models import Mode, RequestParams  # noqa: E402

USER_A = "0xaaaa000000000000000000000000000000000001"
USER_B = "0xbbbb000000000000000000000000000000000002"


def track(item_id: str, title: str | None = None, **extra: Any) -> dict[str, Any]:
    """Track as the generation service reports it (camelCase)."""
    data = {
        "id": item_id,
        "title": title or f"Track {item_id}",
        "audioUrl": f"https://cdn.example.com/{item_id}.mp3",
        "imageUrl": f"https://cdn.example.com/{item_id}.jpg",
        "tags": "lofi, chill",
        "duration": 182.6,
        "createTime": "2026-10-01T10:00:00",
        "prompt": "lofi beat",
        "modelName": "chirp-v4",
    }
    data.update(extra)
    return data


def poll_payload(task_id: str, status: str, item_ids: list[str] | None = None) -> dict[str, Any]:
    """Record-info response shape."""
    return {
        "code": 200,
        "msg": "success",
        "data": {
            "taskId": task_id,
            "status": status,
            "response": {
                "taskId": task_id,
                "sunoData": [track(i) for i in item_ids or []],
            },
            "errorMessage": None,
        },
    }


def callback_payload(task_id: str, item_ids: list[str]) -> dict[str, Any]:
    """Push callback shape."""
    return {
        "code": 200,
        "msg": "All generated successfully.",
        "data": {
            "callbackType": "complete",
            "task_id": task_id,
            "data": [
                {
                    "id": i,
                    "audio_url": f"https://cdn.example.com/{i}.mp3",
                    "image_url": f"https://cdn.example.com/{i}.jpg",
                    "title": f"Track {i}",
                    "tags": "lofi, chill",
                    "duration": 182.6,
                    "createTime": "2026-10-01T10:00:00",
                    "prompt": "lofi beat",
                    "model_name": "chirp-v4",
                }
                for i in item_ids
            ],
        },
    }


class FakeGenerationService:
    """In-memory generation service."""

    def __init__(self):
        self.task_ids: list[str] = []
        self.submitted: list[RequestParams] = []
        self.submit_error: Exception | None = None
        self.reports: dict[str, ServiceStatusReport] = {}
        self.poll_errors: dict[str, int] = {}
        self.poll_calls: list[str] = []
        self._counter = 0

    def set_result(self, task_id: str, status: str, item_ids: list[str] | None = None) -> None:
        self.reports[task_id] = normalize_status_payload(poll_payload(task_id, status, item_ids))

    async def submit(self, params: RequestParams) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(params)
        if self.task_ids:
            return self.task_ids.pop(0)
        self._counter += 1
        return f"task-{self._counter}"

    async def poll_status(self, task_id: str) -> ServiceStatusReport:
        self.poll_calls.append(task_id)
        remaining = self.poll_errors.get(task_id, 0)
        if remaining:
            self.poll_errors[task_id] = remaining - 1
            raise PollTransientError("connection reset", context={"task_id": task_id})
        return self.reports.get(task_id) or normalize_status_payload(
            poll_payload(task_id, "PENDING")
        )

    async def close(self) -> None:
        pass


class FakeLedger:
    """In-memory ledger gateway with an eventually consistent read model."""

    def __init__(self):
        self.broadcasts: list[tuple[str, str, int]] = []
        self.broadcast_error: LedgerError | None = None
        self.receipt_error: LedgerError | None = None
        self.receipt_success = True
        self.receipt_gate: asyncio.Event | None = None
        self.all_tasks: dict[str, list[str]] = {}
        self.completed_tasks: dict[str, list[str]] = {}
        self.read_error: LedgerError | None = None

    async def broadcast_generation_request(
        self, user_id: str, task_id: str, params: RequestParams, fee_wei: int
    ) -> str:
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.broadcasts.append((user_id, task_id, fee_wei))
        return f"0xtx{len(self.broadcasts):04d}"

    async def wait_for_receipt(self, transaction_hash: str) -> TransactionReceipt:
        if self.receipt_gate is not None:
            await self.receipt_gate.wait()
        if self.receipt_error is not None:
            raise self.receipt_error
        return TransactionReceipt(
            transaction_hash=transaction_hash, success=self.receipt_success, block_number=1
        )

    async def get_all_task_ids(self, user_id: str) -> list[str]:
        if self.read_error is not None:
            raise self.read_error
        return list(self.all_tasks.get(user_id, []))

    async def get_completed_task_ids(self, user_id: str) -> list[str]:
        if self.read_error is not None:
            raise self.read_error
        return list(self.completed_tasks.get(user_id, []))

    async def get_generation_fee(self, mode: Mode) -> int:
        return DEFAULT_FEES_WEI[mode]

    async def close(self) -> None:
        pass


class FakeStorage:
    """Artifact storage that succeeds, optionally slowly, unless told to raise."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.error: Exception | None = None
        self.uploads: list[ArtifactMetadata] = []

    async def upload(self, metadata: ArtifactMetadata) -> UploadResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.uploads.append(metadata)
        return UploadResult(address=f"ipfs://Qm{metadata.attributes[0].value}")

    async def close(self) -> None:
        pass


@pytest.fixture
def service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def cache_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def cache(cache_backend) -> ItemCacheStore:
    return ItemCacheStore(cache_backend, namespace="generated-items-v1", ttl_hours=24)


@pytest.fixture
def orchestrator(service, ledger, storage, cache) -> GenerationOrchestrator:
    """Orchestrator with background tasks disabled; tests drive the loop with tick()."""
    return GenerationOrchestrator(
        service,
        ledger,
        storage,
        cache,
        poll_interval_seconds=5.0,
        autostart=False,
    )


@pytest.fixture
def lofi_params() -> RequestParams:
    return RequestParams(prompt="lofi beat")
