"""Content-addressed prompt storage with inline/overflow tiering.

The SHA-256 of the UTF-8 body is a version's identity: creation refuses a
second version with the same hash.  Bodies up to ``inline_max_bytes`` live on
the version record; larger ones go to the blob store under
``prompt-content/<hash>`` and only the key is kept on the record.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any

from flowrunner.connectors.blob_store import BlobStore
from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.records import PromptVersion
from flowrunner.errors import PromptEngineError
from flowrunner.utils.metrics import MetricsCollector

logger = logging.getLogger("flowrunner.prompt_engine.content_store")

DEFAULT_INLINE_MAX_BYTES = 300_000
OVERFLOW_KEY_PREFIX = "prompt-content/"


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ContentStore:
    def __init__(
        self,
        data_client: DataClient,
        blob_store: BlobStore,
        inline_max_bytes: int = DEFAULT_INLINE_MAX_BYTES,
        metrics: MetricsCollector | None = None,
    ):
        self.data_client = data_client
        self.blob_store = blob_store
        self.inline_max_bytes = inline_max_bytes
        self.metrics = metrics or MetricsCollector()
        self._stats = {"inline_count": 0, "overflow_count": 0, "inline_bytes": 0, "overflow_bytes": 0}

    async def create_version(
        self,
        content: str,
        model_id: str,
        workflow_id: str | None = None,
        tenant_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str = "SYSTEM",
    ) -> PromptVersion:
        """Store a new immutable version.

        Raises:
            PromptEngineError: ``DUPLICATE_CONTENT`` (with ``existing_version_id``)
                when the same body is already stored, ``OVERFLOW_STORAGE_FAILED``
                when the blob write fails.  Record-write errors propagate after
                any overflow blob has been cleaned up.
        """
        t0 = time.monotonic()
        digest = content_hash(content)
        encoded = content.encode("utf-8")
        logger.info(
            "Creating prompt version: model=%s workflow=%s tenant=%s bytes=%d",
            model_id, workflow_id, tenant_id, len(encoded),
        )

        existing = await self._find_duplicate(digest)
        if existing is not None:
            raise PromptEngineError(
                "DUPLICATE_CONTENT",
                "Content already exists with same hash",
                {"existing_version_id": existing.id, "content_hash": digest, "model_id": model_id},
            )

        storage_key: str | None = None
        inline: str | None = content
        if len(encoded) > self.inline_max_bytes:
            storage_key = await self._store_overflow(digest, encoded)
            inline = None

        version = PromptVersion(
            content_hash=digest,
            model_id=model_id,
            content=inline,
            storage_key=storage_key,
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            size_bytes=len(encoded),
            metadata=dict(metadata or {}),
            created_by=created_by,
        )
        try:
            created = await self.data_client.create_prompt_version(version)
        except Exception as exc:
            if storage_key:
                await self._cleanup_overflow(storage_key)
            self.metrics.increment_counter("prompt_version_create_failures_total")
            logger.error("Prompt version creation failed: hash=%s error=%s", digest, exc)
            raise

        tier = "overflow" if storage_key else "inline"
        self._stats[f"{tier}_count"] += 1
        self._stats[f"{tier}_bytes"] += len(encoded)
        self.metrics.increment_counter("prompt_versions_created_total", labels={"storage": tier})
        self.metrics.observe_histogram("prompt_version_create_seconds", time.monotonic() - t0)
        logger.info("Prompt version %s created (storage=%s)", created.id, tier)
        return created

    async def create_or_get_version(self, content: str, model_id: str, **kwargs: Any) -> PromptVersion:
        """Idempotent :meth:`create_version`: returns the stored version for known content."""
        try:
            return await self.create_version(content, model_id, **kwargs)
        except PromptEngineError as exc:
            if exc.code != "DUPLICATE_CONTENT":
                raise
            existing = await self.data_client.get_prompt_version(exc.details["existing_version_id"])
            if existing is None:
                raise
            return existing

    async def get_content(self, version: PromptVersion) -> str:
        if version.content is not None:
            return version.content
        if version.storage_key:
            try:
                data = await self.blob_store.get(version.storage_key)
            except Exception:
                self.metrics.increment_counter("prompt_content_retrieval_failures_total")
                logger.error("Overflow content retrieval failed: version=%s key=%s",
                             version.id, version.storage_key)
                raise
            return data.decode("utf-8")
        raise PromptEngineError(
            "NO_CONTENT_FOUND",
            "Version has neither inline content nor a storage key",
            {"version_id": version.id},
        )

    async def verify_integrity(self, version: PromptVersion) -> bool:
        try:
            content = await self.get_content(version)
        except Exception as exc:
            logger.error("Integrity check could not read version %s: %s", version.id, exc)
            return False
        actual = content_hash(content)
        if actual != version.content_hash:
            logger.error(
                "Content integrity violation: version=%s expected=%s actual=%s",
                version.id, version.content_hash, actual,
            )
            self.metrics.increment_counter("prompt_integrity_violations_total")
            return False
        return True

    def storage_stats(self) -> dict[str, int]:
        """Counts and bytes written by this store instance, by tier."""
        return dict(self._stats)

    async def _find_duplicate(self, digest: str) -> PromptVersion | None:
        try:
            found = await self.data_client.find_prompt_versions_by_hash(digest, limit=1)
        except Exception as exc:
            # Proceed with creation rather than block on a failed lookup.
            logger.warning("Duplicate check failed for hash %s: %s", digest, exc)
            return None
        return found[0] if found else None

    async def _store_overflow(self, digest: str, data: bytes) -> str:
        key = f"{OVERFLOW_KEY_PREFIX}{digest}"
        try:
            await self.blob_store.put(key, data)
        except Exception as exc:
            raise PromptEngineError(
                "OVERFLOW_STORAGE_FAILED",
                "Failed to store content in overflow storage",
                {"storage_key": key, "error": str(exc)},
            ) from exc
        logger.debug("Stored overflow content at %s (%d bytes)", key, len(data))
        return key

    async def _cleanup_overflow(self, key: str) -> None:
        try:
            await self.blob_store.delete(key)
            logger.info("Cleaned up orphaned overflow content %s", key)
        except Exception as exc:
            logger.error("Failed to clean up overflow content %s: %s", key, exc)
