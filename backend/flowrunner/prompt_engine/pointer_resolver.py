"""Active-prompt resolution by scope precedence, with a TTL cache.

Precedence, most specific first::

    (tenant, workflow, model) -> (workflow, model) -> (tenant, model)
        -> (model, GLOBAL) -> emergency fallback

Cache keys are ``"{tenant|null}:{workflow|GLOBAL}:{model}"``.  Every
precedence key is probed in the cache before the store is consulted, so a
cached narrow-scope entry wins over a cached broad one.  A resolution is
stored under the caller's primary key.
"""

from __future__ import annotations

import logging
import time

from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.records import GLOBAL_SCOPE, PromptVersion
from flowrunner.prompt_engine.cache import TTLCache
from flowrunner.utils.metrics import MetricsCollector

logger = logging.getLogger("flowrunner.prompt_engine.pointer_resolver")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_SIZE = 200

EMERGENCY_FALLBACK_ID = "emergency-fallback"
EMERGENCY_FALLBACK_HASH = "emergency-fallback-hash"
EMERGENCY_FALLBACK_CONTENT = """You are an AI assistant operating within an automated workflow execution system.

## Core Principles
- Provide accurate, well-reasoned responses
- Maintain consistency with platform capabilities
- Adapt communication style to user expertise level
- Follow specified output formats precisely

## Response Guidelines
- Be concise yet comprehensive
- Use clear, professional language
- Handle errors gracefully with helpful alternatives
- Maintain context awareness across conversation turns

You are operating within an automated workflow system. Your responses directly influence workflow execution and user experience."""


def emergency_fallback(model_id: str) -> PromptVersion:
    return PromptVersion(
        id=EMERGENCY_FALLBACK_ID,
        content_hash=EMERGENCY_FALLBACK_HASH,
        model_id=model_id,
        content=EMERGENCY_FALLBACK_CONTENT,
        created_by="SYSTEM",
    )


def is_emergency_fallback(version: PromptVersion) -> bool:
    return version.id == EMERGENCY_FALLBACK_ID


def cache_key(tenant_id: str | None, scope: str, model_id: str) -> str:
    return f"{tenant_id or 'null'}:{scope}:{model_id}"


def precedence_levels(
    workflow_id: str | None, model_id: str, tenant_id: str | None
) -> list[tuple[str | None, str, str]]:
    """``(tenant_id, scope, source)`` per precedence level, most specific first."""
    levels: list[tuple[str | None, str, str]] = []
    if tenant_id and workflow_id:
        levels.append((tenant_id, workflow_id, "workflow"))
    if workflow_id:
        levels.append((None, workflow_id, "workflow"))
    if tenant_id:
        levels.append((tenant_id, GLOBAL_SCOPE, "model"))
    levels.append((None, GLOBAL_SCOPE, "global"))
    return levels


class PointerResolver:
    def __init__(
        self,
        data_client: DataClient,
        cache: TTLCache[PromptVersion] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.data_client = data_client
        if cache is None:
            cache = TTLCache(DEFAULT_TTL_SECONDS, DEFAULT_MAX_SIZE)
        self.cache: TTLCache[PromptVersion] = cache
        self.metrics = metrics or MetricsCollector()
        self.last_resolution_was_cache_hit = False

    async def resolve_active_prompt(
        self, workflow_id: str | None, model_id: str, tenant_id: str | None = None
    ) -> PromptVersion:
        """Return the active version for the most specific matching scope.

        Never raises: store failures fall through to the next level and total
        failure yields :func:`emergency_fallback`.
        """
        t0 = time.monotonic()
        levels = precedence_levels(workflow_id, model_id, tenant_id)

        for tenant, scope, source in levels:
            key = cache_key(tenant, scope, model_id)
            cached = self.cache.get(key)
            if cached is not None:
                self.last_resolution_was_cache_hit = True
                self.metrics.increment_counter("prompt_pointer_cache_hits_total")
                logger.debug("Prompt cache hit: key=%s source=%s version=%s", key, source, cached.id)
                return cached

        self.last_resolution_was_cache_hit = False
        self.metrics.increment_counter("prompt_pointer_cache_misses_total")

        try:
            version, source = await self._resolve_with_precedence(levels, model_id)
        except Exception as exc:
            logger.error("Prompt resolution failed, using emergency fallback: %s", exc)
            return emergency_fallback(model_id)

        self.cache.set(cache_key(tenant_id, workflow_id or GLOBAL_SCOPE, model_id), version)
        logger.info(
            "Prompt resolved: version=%s source=%s workflow=%s tenant=%s in %.1fms",
            version.id, source, workflow_id, tenant_id, (time.monotonic() - t0) * 1000,
        )
        return version

    async def _resolve_with_precedence(
        self, levels: list[tuple[str | None, str, str]], model_id: str
    ) -> tuple[PromptVersion, str]:
        for tenant, scope, source in levels:
            version = await self._resolve_pointer(tenant, scope, model_id)
            if version is not None:
                return version, source
        logger.warning("No active prompt pointer for model %s; using emergency fallback", model_id)
        self.metrics.increment_counter("prompt_emergency_fallbacks_total")
        return emergency_fallback(model_id), "emergency"

    async def _resolve_pointer(self, tenant_id: str | None, scope: str, model_id: str) -> PromptVersion | None:
        try:
            pointers = await self.data_client.list_pointers(model_id, scope, tenant_id, limit=1)
            if not pointers:
                return None
            pointer = pointers[0]
            version = await self.data_client.get_prompt_version(pointer.active_version_id)
            if version is None:
                logger.warning(
                    "Active pointer %s references missing version %s (tenant=%s scope=%s model=%s)",
                    pointer.id, pointer.active_version_id, tenant_id, scope, model_id,
                )
            return version
        except Exception as exc:
            logger.warning(
                "Pointer lookup failed (tenant=%s scope=%s model=%s): %s",
                tenant_id, scope, model_id, exc,
            )
            return None

    def was_cache_hit(self) -> bool:
        return self.last_resolution_was_cache_hit

    def invalidate_cache(
        self,
        workflow_id: str | None = None,
        model_id: str | None = None,
        tenant_id: str | None = None,
    ) -> int:
        """Drop cached resolutions.

        With no arguments the whole cache is cleared.  Otherwise an entry is
        dropped when every given field matches it; tenant-less and GLOBAL
        entries count as matching, since they may have served that scope.
        """
        if workflow_id is None and model_id is None and tenant_id is None:
            removed = self.cache.invalidate()
            logger.info("Prompt cache cleared (%d entries)", removed)
            return removed

        def _matches(key: str) -> bool:
            cached_tenant, cached_scope, cached_model = key.split(":", 2)
            return (
                (tenant_id is None or cached_tenant in (tenant_id, "null"))
                and (workflow_id is None or cached_scope in (workflow_id, GLOBAL_SCOPE))
                and (model_id is None or cached_model == model_id)
            )

        removed = self.cache.invalidate(_matches)
        logger.info(
            "Selective prompt cache invalidation: removed=%d workflow=%s model=%s tenant=%s",
            removed, workflow_id, model_id, tenant_id,
        )
        return removed

    def cache_stats(self) -> dict[str, float]:
        return self.cache.stats()
