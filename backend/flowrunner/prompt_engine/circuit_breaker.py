"""Per-model circuit breaker backed by the shared data store.

Two states: closed (healthy) and open (disabled).  An open circuit stays open
until :meth:`CircuitBreaker.reset` is called; there is no half-open probe.
Any failure while evaluating health fails open.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.records import AuditLogEntry, CircuitBreakerState, utcnow
from flowrunner.utils.metrics import MetricsCollector

logger = logging.getLogger("flowrunner.prompt_engine.circuit_breaker")

REQUEST_OPERATIONS = frozenset({"CREATE", "DEPLOY", "ROLLBACK", "UPDATE"})
MANUAL_OPEN_REASON = "Circuit breaker manually opened"
FAIL_OPEN_REASON = "Health check failed - failing open"


@dataclass
class HealthCheck:
    healthy: bool
    reason: str | None = None
    error_rate: float | None = None
    request_count: int | None = None


@dataclass(frozen=True)
class BreakerDefaults:
    error_threshold: float = 0.05
    time_window: int = 300
    min_requests: int = 10


@dataclass
class _ErrorStats:
    request_count: int
    error_count: int

    @property
    def error_rate(self) -> float:
        return self.error_count / self.request_count if self.request_count else 0.0


class CircuitBreaker:
    def __init__(
        self,
        data_client: DataClient,
        defaults: BreakerDefaults | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: MetricsCollector | None = None,
    ):
        self.data_client = data_client
        self.defaults = defaults or BreakerDefaults()
        self._clock = clock
        self.metrics = metrics or MetricsCollector()

    async def check_health(self, model_id: str) -> HealthCheck:
        t0 = time.monotonic()
        try:
            state = await self._get_or_create_state(model_id)

            if state.disabled:
                reason = state.reason or MANUAL_OPEN_REASON
                logger.warning("Circuit open for model %s: %s", model_id, reason)
                self.metrics.increment_counter("circuit_breaker_open_total", labels={"model_id": model_id})
                return HealthCheck(healthy=False, reason=reason)

            stats = await self._recent_error_stats(model_id, state.time_window)
            if stats.request_count >= state.min_requests and stats.error_rate > state.error_threshold:
                reason = (
                    f"Automatic trip: error rate {stats.error_rate * 100:.1f}% "
                    f"exceeds threshold {state.error_threshold * 100:.1f}%"
                )
                await self._open(state, reason, actor="SYSTEM")
                logger.error(
                    "Circuit breaker tripped for model %s: errors=%d requests=%d",
                    model_id, stats.error_count, stats.request_count,
                )
                self.metrics.increment_counter("circuit_breaker_auto_trips_total", labels={"model_id": model_id})
                return HealthCheck(
                    healthy=False, reason=reason,
                    error_rate=stats.error_rate, request_count=stats.request_count,
                )

            self.metrics.observe_histogram("circuit_breaker_check_seconds", time.monotonic() - t0)
            return HealthCheck(healthy=True, error_rate=stats.error_rate, request_count=stats.request_count)

        except Exception as exc:
            logger.error("Circuit breaker health check failed for %s: %s", model_id, exc)
            self.metrics.increment_counter("circuit_breaker_check_failures_total")
            return HealthCheck(healthy=True, reason=FAIL_OPEN_REASON)

    async def trip(self, model_id: str, reason: str, actor: str) -> None:
        """Manually open the circuit for *model_id*."""
        logger.info("Manually tripping circuit for %s by %s: %s", model_id, actor, reason)
        state = await self._get_or_create_state(model_id)
        await self._open(state, reason, actor)
        self.metrics.increment_counter("circuit_breaker_manual_trips_total", labels={"model_id": model_id})

    async def reset(self, model_id: str, actor: str, reason: str = "Manual reset") -> None:
        logger.info("Resetting circuit for %s by %s", model_id, actor)
        state = await self._get_or_create_state(model_id)
        state.disabled = False
        state.reason = None
        state.updated_by = actor
        await self.data_client.update_breaker_state(state)
        await self._audit(model_id, "CIRCUIT_CLOSE", reason, actor)
        self.metrics.increment_counter("circuit_breaker_resets_total", labels={"model_id": model_id})

    async def circuit_stats(self) -> dict[str, int]:
        try:
            states = await self.data_client.list_breaker_states()
        except Exception as exc:
            logger.error("Failed to read circuit stats: %s", exc)
            return {"total_circuits": 0, "open_circuits": 0, "healthy_circuits": 0}
        open_count = sum(1 for s in states if s.disabled)
        return {
            "total_circuits": len(states),
            "open_circuits": open_count,
            "healthy_circuits": len(states) - open_count,
        }

    async def _get_or_create_state(self, model_id: str) -> CircuitBreakerState:
        defaults = CircuitBreakerState(
            model_id=model_id,
            error_threshold=self.defaults.error_threshold,
            time_window=self.defaults.time_window,
            min_requests=self.defaults.min_requests,
        )
        try:
            state = await self.data_client.get_breaker_state(model_id)
            if state is not None:
                return state
            created = await self.data_client.create_breaker_state(defaults)
            logger.info("Created default circuit state for %s", model_id)
            return created
        except Exception as exc:
            logger.warning("Failed to load circuit state for %s, using defaults: %s", model_id, exc)
            return defaults

    async def _recent_error_stats(self, model_id: str, window_seconds: int) -> _ErrorStats:
        since = self._clock() - timedelta(seconds=window_seconds)
        try:
            entries = await self.data_client.list_audit_logs(model_id, since)
        except Exception as exc:
            logger.warning("Failed to read audit log for %s, assuming healthy: %s", model_id, exc)
            return _ErrorStats(0, 0)

        requests = errors = 0
        for entry in entries:
            if entry.operation in REQUEST_OPERATIONS:
                requests += 1
            if entry.operation == "CIRCUIT_OPEN" or "error" in (entry.reason or "").lower():
                errors += 1
        return _ErrorStats(requests, errors)

    async def _open(self, state: CircuitBreakerState, reason: str, actor: str) -> None:
        now = self._clock()
        state.disabled = True
        state.reason = reason
        state.last_tripped = now
        state.updated_by = actor
        await self.data_client.update_breaker_state(state)
        await self._audit(state.model_id, "CIRCUIT_OPEN", reason, actor)

    async def _audit(self, model_id: str, operation: str, reason: str, actor: str) -> None:
        try:
            await self.data_client.create_audit_log(
                AuditLogEntry(model_id=model_id, operation=operation, reason=reason,
                              actor=actor, timestamp=self._clock())
            )
        except Exception as exc:
            logger.error("Failed to write %s audit entry for %s: %s", operation, model_id, exc)
