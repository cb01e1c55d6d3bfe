"""Conversation memory loading with a per-conversation TTL cache."""

from __future__ import annotations

import logging

from flowrunner.connectors.data_client import DataClient
from flowrunner.prompt_engine.cache import TTLCache
from flowrunner.utils.metrics import MetricsCollector

logger = logging.getLogger("flowrunner.prompt_engine.memory")

DEFAULT_TTL_SECONDS = 120.0
DEFAULT_MAX_SIZE = 500
MEMORY_ROLES = ("user", "assistant")


class MemoryLoader:
    """Loads the last N user/assistant turns of a conversation, oldest first.

    Any failure yields an empty history; a missing memory never blocks a
    prompt build.
    """

    def __init__(
        self,
        data_client: DataClient,
        cache: TTLCache[list[dict]] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.data_client = data_client
        if cache is None:
            cache = TTLCache(DEFAULT_TTL_SECONDS, DEFAULT_MAX_SIZE)
        self.cache: TTLCache[list[dict]] = cache
        self.metrics = metrics or MetricsCollector()

    async def load(self, conversation_id: str, memory_size: int = 10) -> list[dict]:
        if not conversation_id or memory_size <= 0:
            return []

        key = f"{conversation_id}:{memory_size}"
        cached = self.cache.get(key)
        if cached is not None:
            self.metrics.increment_counter("memory_cache_hits_total")
            return [dict(turn) for turn in cached]

        try:
            records = await self.data_client.list_memories(conversation_id)
        except Exception as exc:
            logger.error("Failed to load memory for conversation %s: %s", conversation_id, exc)
            self.metrics.increment_counter("memory_load_failures_total")
            return []

        records = sorted(
            (r for r in records if r.role in MEMORY_ROLES and r.content),
            key=lambda r: r.timestamp,
        )
        turns = [
            {"role": r.role, "content": r.content, "timestamp": r.timestamp.isoformat()}
            for r in records[-memory_size:]
        ]
        self.cache.set(key, turns)
        logger.info("Loaded %d memory turns for conversation %s", len(turns), conversation_id)
        return [dict(turn) for turn in turns]

    def invalidate(self, conversation_id: str) -> int:
        """Drop cached histories for *conversation_id* after it gains new turns."""
        prefix = f"{conversation_id}:"
        return self.cache.invalidate(lambda key: key.startswith(prefix))

    def cache_stats(self) -> dict[str, float]:
        return self.cache.stats()
