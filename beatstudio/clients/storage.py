"""Artifact storage client (content-addressed JSON pinning)."""

from dataclasses import dataclass
import hashlib
import json
from typing import Any

import httpx
from pydantic import BaseModel, Field
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from beatstudio.errors import StorageUploadError
from beatstudio.tasks.models import GeneratedItem, Mode, RequestParams

logger = structlog.get_logger(__name__)

PLACEHOLDER_ADDRESS_PREFIX = "local-"


class MetadataAttribute(BaseModel):
    trait_type: str
    value: str | int


class ArtifactMetadata(BaseModel):
    """Metadata document uploaded for each generated item."""

    name: str
    description: str
    image: str
    external_url: str | None = None
    audio_url: str
    duration: int
    genre: list[str] = Field(default_factory=list)
    created_by: str
    model_used: str
    generation_date: str
    prompt: str = ""
    transaction_hash: str = ""
    task_id: str = ""
    instrumental: bool = False
    custom_mode: bool = False
    style: str | None = None
    attributes: list[MetadataAttribute] = Field(default_factory=list)

    @classmethod
    def for_item(
        cls,
        item: GeneratedItem,
        params: RequestParams | None = None,
        transaction_hash: str | None = None,
        creator: str | None = None,
    ) -> "ArtifactMetadata":
        genre = sorted(item.tags)
        advanced = bool(params and params.mode == Mode.ADVANCED)
        instrumental = bool(params and params.instrumental)
        generated = item.created_at.isoformat()
        return cls(
            name=item.title or "AI Generated Music",
            description=f'AI-generated music. Prompt: "{item.prompt}"',
            image=item.image_url,
            external_url=item.media_url,
            audio_url=item.media_url,
            duration=item.duration_seconds,
            genre=genre,
            created_by=creator or "unknown",
            model_used=item.model_name or "unknown",
            generation_date=generated,
            prompt=item.prompt,
            transaction_hash=transaction_hash or "",
            task_id=item.task_id,
            instrumental=instrumental,
            custom_mode=advanced,
            style=params.style if params else None,
            attributes=[
                MetadataAttribute(trait_type="Song ID", value=item.item_id),
                MetadataAttribute(trait_type="Task ID", value=item.task_id),
                MetadataAttribute(trait_type="Version", value=item.version),
                MetadataAttribute(trait_type="Transaction Hash", value=transaction_hash or ""),
                MetadataAttribute(trait_type="Genre", value=", ".join(genre)),
                MetadataAttribute(trait_type="Duration", value=item.duration_seconds),
                MetadataAttribute(trait_type="Model", value=item.model_name or "unknown"),
                MetadataAttribute(trait_type="Generation Date", value=generated),
                MetadataAttribute(trait_type="Instrumental", value="Yes" if instrumental else "No"),
                MetadataAttribute(trait_type="Custom Mode", value="Advanced" if advanced else "Simple"),
            ],
        )


@dataclass
class UploadResult:
    address: str
    degraded: bool = False


def placeholder_address(metadata: ArtifactMetadata) -> str:
    """Deterministic local address derived from the metadata content."""
    canonical = json.dumps(metadata.model_dump(mode="json"), sort_keys=True)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{PLACEHOLDER_ADDRESS_PREFIX}{digest[:46]}"


class ArtifactStorageClient:
    """
    Uploads artifact metadata and returns its content address.

    ``upload`` never raises. When the store cannot be reached it logs a
    ``StorageUploadError`` and returns a placeholder address flagged as
    degraded.
    """

    def __init__(
        self,
        api_url: str,
        api_token: str = "",
        gateway_url: str = "https://gateway.pinata.cloud/ipfs",
        timeout_seconds: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.gateway_url = gateway_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=api_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={"Authorization": f"Bearer {api_token}"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    def gateway_link(self, address: str) -> str | None:
        if address.startswith(PLACEHOLDER_ADDRESS_PREFIX):
            return None
        return f"{self.gateway_url}/{address.removeprefix('ipfs://')}"

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=1),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _pin(self, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post("/pinning/pinJSONToIPFS", json=body)
        response.raise_for_status()
        return response.json()

    async def upload(self, metadata: ArtifactMetadata) -> UploadResult:
        """
        Pin the metadata document.

        Returns:
            Content address, or a degraded placeholder on failure
        """
        body = {
            "pinataContent": metadata.model_dump(mode="json", exclude_none=True),
            "pinataMetadata": {"name": f"{metadata.name}-{metadata.task_id}"},
        }
        try:
            data = await self._pin(body)
            if not isinstance(data, dict):
                raise StorageUploadError("Storage response is not a JSON object")
            content_hash = data.get("IpfsHash") or data.get("cid")
            if not content_hash:
                raise StorageUploadError("Storage response carries no content hash")
        except (httpx.HTTPError, ValueError, StorageUploadError) as e:
            address = placeholder_address(metadata)
            logger.error(
                "Artifact upload failed, using placeholder address",
                error_type="StorageUploadError",
                error=str(e),
                task_id=metadata.task_id,
                placeholder=address,
            )
            return UploadResult(address=address, degraded=True)

        address = f"ipfs://{content_hash}"
        logger.info("Artifact uploaded", task_id=metadata.task_id, address=address)
        return UploadResult(address=address)
