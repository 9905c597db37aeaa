"""
Durable per-user cache of generated items.

The cache is a non-authoritative snapshot: it lets a new session show items
immediately while the reconciliation loop and ledger sweep catch up. Entries
are keyed by ``(namespace, user_id)`` and expire after a fixed TTL.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import json
from pathlib import Path
import shutil
from typing import Any, Callable, Protocol

from pydantic import ValidationError
import structlog

from beatstudio.errors import CacheUnavailableError
from beatstudio.tasks.models import GeneratedItem

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    """
    Persisted snapshot of one user's items.

    Attributes:
        user_id: Account the items belong to
        written_at: When the snapshot was written
        items: Fully formed items only
    """

    user_id: str
    written_at: datetime
    items: list[GeneratedItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "written_at": self.written_at.isoformat(),
            "items": [item.model_dump(mode="json") for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            user_id=data["user_id"],
            written_at=datetime.fromisoformat(data["written_at"]),
            items=[GeneratedItem.model_validate(item) for item in data["items"]],
        )


class CacheBackend(Protocol):
    """Key/value storage for cache entries. Raises OSError when unusable."""

    async def read(self, namespace: str, user_id: str) -> dict[str, Any] | None: ...

    async def write(self, namespace: str, user_id: str, payload: dict[str, Any]) -> None: ...

    async def delete(self, namespace: str, user_id: str) -> None: ...

    async def purge_namespaces(self, keep: str) -> int: ...


class MemoryCacheBackend:
    """In-process backend, used in tests and when no cache directory is set."""

    def __init__(self):
        self._entries: dict[tuple[str, str], str] = {}

    async def read(self, namespace: str, user_id: str) -> dict[str, Any] | None:
        raw = self._entries.get((namespace, user_id))
        return json.loads(raw) if raw is not None else None

    async def write(self, namespace: str, user_id: str, payload: dict[str, Any]) -> None:
        self._entries[(namespace, user_id)] = json.dumps(payload)

    async def delete(self, namespace: str, user_id: str) -> None:
        self._entries.pop((namespace, user_id), None)

    async def purge_namespaces(self, keep: str) -> int:
        stale = [key for key in self._entries if key[0] != keep]
        for key in stale:
            del self._entries[key]
        return len(stale)


class FileCacheBackend:
    """
    One JSON file per user under ``<directory>/<namespace>/``.

    File names are hashes of the user id so account identifiers never appear
    on disk. Blocking I/O runs in a worker thread.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, namespace: str, user_id: str) -> Path:
        digest = hashlib.sha256(user_id.lower().encode("utf-8")).hexdigest()[:32]
        return self.directory / namespace / f"{digest}.json"

    async def read(self, namespace: str, user_id: str) -> dict[str, Any] | None:
        path = self._path(namespace, user_id)

        def _read() -> dict[str, Any] | None:
            if not path.exists():
                return None
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)

        return await asyncio.to_thread(_read)

    async def write(self, namespace: str, user_id: str, payload: dict[str, Any]) -> None:
        path = self._path(namespace, user_id)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f)
            tmp.replace(path)

        await asyncio.to_thread(_write)

    async def delete(self, namespace: str, user_id: str) -> None:
        path = self._path(namespace, user_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def purge_namespaces(self, keep: str) -> int:
        def _purge() -> int:
            if not self.directory.exists():
                return 0
            stale = [p for p in self.directory.iterdir() if p.is_dir() and p.name != keep]
            for p in stale:
                shutil.rmtree(p)
            return len(stale)

        return await asyncio.to_thread(_purge)


class ItemCacheStore:
    """
    TTL-bound, per-user item cache on top of a backend.

    Storage failures never propagate: the store logs ``CacheUnavailable`` once
    and callers continue from in-memory state.

    Example:
        >>> store = ItemCacheStore(MemoryCacheBackend(), ttl_hours=24)
        >>> await store.save("0xabc", items)
        >>> await store.load("0xabc")
    """

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "generated-items-v1",
        ttl_hours: int = 24,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the store.

        Args:
            backend: Storage backend
            namespace: Cache namespace; entries under other namespaces are stale
            ttl_hours: Time-to-live for entries in hours
            clock: Time source (injectable for tests)
        """
        self.backend = backend
        self.namespace = namespace
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock
        self._unavailable = False
        self._last_write: datetime | None = None

    @property
    def available(self) -> bool:
        return not self._unavailable

    def _mark_unavailable(self, exc: Exception, operation: str) -> None:
        error = CacheUnavailableError(str(exc), context={"operation": operation})
        if not self._unavailable:
            logger.error(
                "Item cache unavailable, continuing in memory only",
                error_type="CacheUnavailable",
                error=error.message,
                operation=operation,
            )
        self._unavailable = True

    async def load(self, user_id: str) -> list[GeneratedItem]:
        """
        Read the user's cached items.

        Returns an empty list when there is no entry, the entry is older than
        the TTL, belongs to another user, or cannot be parsed. Expired and
        unreadable entries are discarded.
        """
        try:
            raw = await self.backend.read(self.namespace, user_id)
        except OSError as exc:
            self._mark_unavailable(exc, "read")
            return []
        except ValueError as exc:
            logger.warning("Discarding corrupt cache entry", user_id=user_id, error=str(exc))
            await self.discard(user_id)
            return []

        if raw is None:
            return []

        try:
            entry = CacheEntry.from_dict(raw)
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            logger.warning("Discarding unreadable cache entry", user_id=user_id, error=str(exc))
            await self.discard(user_id)
            return []

        if entry.user_id.lower() != user_id.lower():
            logger.warning(
                "Cache entry belongs to another account, ignoring",
                user_id=user_id,
                entry_user=entry.user_id,
            )
            return []

        age = self._clock() - entry.written_at
        if age > self.ttl:
            logger.debug(
                "Cache entry expired, discarding",
                user_id=user_id,
                age_hours=round(age.total_seconds() / 3600, 1),
            )
            await self.discard(user_id)
            return []

        logger.info("Item cache hydrated", user_id=user_id, items=len(entry.items))
        return entry.items

    async def save(self, user_id: str, items: list[GeneratedItem]) -> bool:
        """
        Overwrite the user's entry with the fully formed items.

        Returns:
            True if an entry was written
        """
        complete = [item for item in items if item.is_complete]
        if not complete:
            return False

        entry = CacheEntry(user_id=user_id, written_at=self._clock(), items=complete)
        try:
            await self.backend.write(self.namespace, user_id, entry.to_dict())
        except OSError as exc:
            self._mark_unavailable(exc, "write")
            return False

        if self._unavailable:
            logger.info("Item cache available again", user_id=user_id)
        self._unavailable = False
        self._last_write = entry.written_at
        logger.debug("Item cache written", user_id=user_id, items=len(complete))
        return True

    async def discard(self, user_id: str) -> None:
        try:
            await self.backend.delete(self.namespace, user_id)
        except OSError as exc:
            self._mark_unavailable(exc, "delete")

    async def purge_stale_namespaces(self) -> int:
        """Delete entries written under any other namespace version."""
        try:
            purged = await self.backend.purge_namespaces(self.namespace)
        except OSError as exc:
            self._mark_unavailable(exc, "purge")
            return 0
        if purged:
            logger.info("Stale cache namespaces purged", purged=purged, keep=self.namespace)
        return purged

    def health_check(self) -> dict[str, Any]:
        return {
            "cache": "healthy" if self.available else "unavailable",
            "namespace": self.namespace,
            "ttl_hours": self.ttl.total_seconds() / 3600,
            "last_write": self._last_write.isoformat() if self._last_write else None,
        }
