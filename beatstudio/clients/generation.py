"""
Generation service client.

The service answers status queries and pushes callbacks in several nested
shapes. ``normalize_status_payload`` is the single place those shapes are
understood; everything past this module sees a ``ServiceStatusReport``.
"""

from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from beatstudio.errors import (
    InvalidRequestError,
    PollTransientError,
    ServiceUnavailableError,
)
from beatstudio.tasks.models import GeneratedItem, Mode, RequestParams, ServiceStatus

logger = structlog.get_logger(__name__)

DEFAULT_COVER_IMAGE = "https://via.placeholder.com/400x400/1e1e1e/ffffff?text=Music"

_SUCCESS_STATUSES = {"SUCCESS", "COMPLETE", "COMPLETED"}
_PENDING_STATUSES = {"PENDING", "TEXT_SUCCESS", "FIRST_SUCCESS", "TEXT", "FIRST", "RUNNING"}
_FAILED_STATUSES = {
    "FAILED",
    "ERROR",
    "CREATE_TASK_FAILED",
    "GENERATE_AUDIO_FAILED",
    "CALLBACK_EXCEPTION",
    "SENSITIVE_WORD_ERROR",
}
_INVALID_REQUEST_CODES = {400, 401, 403, 413, 422, 451}


def map_service_status(raw: str | None) -> ServiceStatus:
    """Map a service status or callback type onto ``ServiceStatus``."""
    if not raw:
        return ServiceStatus.UNKNOWN
    value = str(raw).strip().upper()
    if value in _SUCCESS_STATUSES:
        return ServiceStatus.SUCCESS
    if value in _PENDING_STATUSES:
        return ServiceStatus.PENDING
    if value in _FAILED_STATUSES:
        return ServiceStatus.FAILED
    return ServiceStatus.UNKNOWN


def _valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https", "ipfs") and bool(parsed.netloc)


class ServiceTrack(BaseModel):
    """One track as reported by the generation service."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "itemId", "item_id"))
    title: str = ""
    audio_url: str = Field(
        default="",
        validation_alias=AliasChoices(
            "audioUrl", "audio_url", "sourceAudioUrl", "source_audio_url"
        ),
    )
    stream_audio_url: str = Field(
        default="", validation_alias=AliasChoices("streamAudioUrl", "stream_audio_url")
    )
    image_url: str = Field(
        default="",
        validation_alias=AliasChoices(
            "imageUrl", "image_url", "sourceImageUrl", "source_image_url"
        ),
    )
    tags: str | list[str] | None = None
    duration: float | None = None
    create_time: str | int | float | None = Field(
        default=None, validation_alias=AliasChoices("createTime", "create_time", "createdAt")
    )
    prompt: str = ""
    model_name: str | None = Field(
        default=None, validation_alias=AliasChoices("modelName", "model_name")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v) if v is not None else ""

    @field_validator("title", "audio_url", "stream_audio_url", "image_url", "prompt", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def tag_set(self) -> set[str]:
        if not self.tags:
            return set()
        parts = self.tags if isinstance(self.tags, list) else self.tags.split(",")
        return {p.strip() for p in parts if p and p.strip()}

    def created_at(self) -> datetime:
        if self.create_time is None or self.create_time == "":
            return datetime.now()
        if isinstance(self.create_time, (int, float)):
            # Epoch milliseconds
            return datetime.fromtimestamp(self.create_time / 1000)
        try:
            return datetime.fromisoformat(str(self.create_time).replace("Z", "+00:00"))
        except ValueError:
            return datetime.now()

    def media_url(self) -> str:
        for candidate in (self.audio_url, self.stream_audio_url):
            if candidate and _valid_url(candidate):
                return candidate
        return ""

    def to_item(self, task_id: str, version: str) -> GeneratedItem:
        image = self.image_url if self.image_url and _valid_url(self.image_url) else DEFAULT_COVER_IMAGE
        return GeneratedItem(
            item_id=self.id,
            task_id=task_id,
            version=version,
            title=self.title or "Untitled",
            media_url=self.media_url(),
            image_url=image,
            duration_seconds=round(self.duration or 0),
            tags=self.tag_set(),
            created_at=self.created_at(),
            prompt=self.prompt,
            model_name=self.model_name,
        )


class ServiceStatusReport(BaseModel):
    """Normalized answer from either completion path."""

    task_id: str
    status: ServiceStatus
    tracks: list[ServiceTrack] = Field(default_factory=list)
    raw_status: str | None = None
    error_message: str | None = None

    def to_items(self) -> list[GeneratedItem]:
        """
        Build items for this task, one per distinct track id.

        Tracks without an id or a usable media URL are dropped. Versions are
        assigned in payload order among the kept tracks.
        """
        items: list[GeneratedItem] = []
        seen: set[str] = set()
        for track in self.tracks:
            if not track.id or track.id in seen:
                continue
            if not track.media_url():
                logger.warning(
                    "Dropping track without media URL", task_id=self.task_id, item_id=track.id
                )
                continue
            seen.add(track.id)
            items.append(track.to_item(self.task_id, f"v{len(items) + 1}"))
        return items


def _first(mapping: Any, *keys: str) -> Any:
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _extract_tracks(payload: dict[str, Any], body: dict[str, Any]) -> list[Any]:
    response = body.get("response") if isinstance(body.get("response"), dict) else {}
    for candidate in (
        response.get("sunoData"),
        response.get("data"),
        body.get("data"),
        body.get("items"),
        payload.get("items"),
    ):
        if isinstance(candidate, list):
            return candidate
    return []


def normalize_status_payload(
    payload: Any, task_id: str | None = None
) -> ServiceStatusReport:
    """
    Normalize a poll response or push callback.

    Accepted shapes:
        - ``{"taskId", "status": "complete", "items": [...]}``
        - ``{"code", "data": {"callbackType", "task_id", "data": [...]}}``
        - ``{"code", "data": {"taskId", "status", "response": {"sunoData": [...]}}}``
          (also ``response.data`` or ``data.data``)

    Args:
        payload: Decoded JSON body
        task_id: Task id to fall back on when the payload omits it

    Returns:
        Normalized status report

    Raises:
        ValueError: If the payload is not an object or carries no task id
    """
    if not isinstance(payload, dict):
        raise ValueError("Status payload must be a JSON object")

    body = payload["data"] if isinstance(payload.get("data"), dict) else payload
    resolved_id = (
        _first(body, "taskId", "task_id")
        or _first(body.get("response"), "taskId", "task_id")
        or _first(payload, "taskId", "task_id")
        or task_id
    )
    if not resolved_id:
        raise ValueError("Status payload carries no task id")

    raw_status = _first(body, "status", "callbackType") or _first(payload, "status")
    status = map_service_status(raw_status)

    code = payload.get("code")
    if code is not None and code != 200 and status != ServiceStatus.FAILED:
        status = ServiceStatus.ERROR

    tracks: list[ServiceTrack] = []
    for raw_track in _extract_tracks(payload, body):
        if not isinstance(raw_track, dict):
            continue
        try:
            tracks.append(ServiceTrack.model_validate(raw_track))
        except ValueError as exc:
            logger.warning("Skipping malformed track", task_id=resolved_id, error=str(exc))

    error_message = None
    if status in (ServiceStatus.FAILED, ServiceStatus.ERROR):
        error_message = _first(body, "errorMessage", "error_message") or _first(payload, "msg")

    return ServiceStatusReport(
        task_id=str(resolved_id),
        status=status,
        tracks=tracks,
        raw_status=str(raw_status) if raw_status else None,
        error_message=error_message,
    )


class GenerationServiceClient:
    """
    Async HTTP client for the music generation service.

    Submissions are never retried automatically; a retried submit could
    create a second billable task. Status polls retry briefly on transport
    errors and then surface ``PollTransientError``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str = "V4_5",
        callback_url: str | None = None,
        timeout_seconds: float = 15.0,
        poll_timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.callback_url = callback_url
        self.poll_timeout = poll_timeout_seconds
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    def build_request_body(self, params: RequestParams) -> dict[str, Any]:
        advanced = params.mode == Mode.ADVANCED
        body: dict[str, Any] = {
            "prompt": params.prompt,
            "customMode": advanced,
            "instrumental": params.instrumental,
            "model": self.model,
        }
        if self.callback_url:
            body["callBackUrl"] = self.callback_url
        if advanced:
            body["style"] = params.style
            body["title"] = params.title or "AI Generated Music"
            if not params.instrumental:
                body["vocalGender"] = params.vocal_gender or "m"
            if params.negative_tags:
                body["negativeTags"] = params.negative_tags
        return body

    async def submit(self, params: RequestParams) -> str:
        """
        Submit a generation request.

        Returns:
            Task id issued by the service

        Raises:
            ServiceUnavailableError: On transport failures, 5xx or 429
            InvalidRequestError: When the service rejects the request
        """
        try:
            response = await self._client.post(
                "/api/v1/generate", json=self.build_request_body(params)
            )
        except httpx.RequestError as e:
            raise ServiceUnavailableError(f"Generation service unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise ServiceUnavailableError(
                f"Generation service returned HTTP {response.status_code}",
                context={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise InvalidRequestError(
                f"Generation request rejected: HTTP {response.status_code}",
                context={"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceUnavailableError("Generation service returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ServiceUnavailableError("Generation service response is not a JSON object")

        code = data.get("code")
        if code != 200:
            message = data.get("msg") or "Failed to generate music"
            if code in _INVALID_REQUEST_CODES:
                raise InvalidRequestError(message, context={"code": code})
            raise ServiceUnavailableError(message, context={"code": code})

        task_id = _first(data.get("data"), "taskId", "task_id")
        if not task_id:
            raise ServiceUnavailableError("Generation service response carries no task id")

        logger.info("Generation request accepted", task_id=task_id, mode=params.mode.value)
        return str(task_id)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch_record(self, task_id: str) -> httpx.Response:
        return await self._client.get(
            "/api/v1/generate/record-info",
            params={"taskId": task_id},
            timeout=self.poll_timeout,
        )

    async def poll_status(self, task_id: str) -> ServiceStatusReport:
        """
        Query the service for a task's status.

        Raises:
            PollTransientError: On transport failures, HTTP errors or
                unparseable responses
        """
        try:
            response = await self._fetch_record(task_id)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise PollTransientError(
                f"Status query failed: HTTP {e.response.status_code}",
                context={"task_id": task_id},
            ) from e
        except httpx.RequestError as e:
            raise PollTransientError(
                f"Status query failed: {e}", context={"task_id": task_id}
            ) from e
        except ValueError as e:
            raise PollTransientError(
                "Status query returned invalid JSON", context={"task_id": task_id}
            ) from e

        try:
            return normalize_status_payload(payload, task_id=task_id)
        except ValueError as e:
            raise PollTransientError(str(e), context={"task_id": task_id}) from e
