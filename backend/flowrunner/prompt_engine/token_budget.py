"""Per-model token and cost caps, enforced before every model call."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flowrunner.errors import TokenBudgetError
from flowrunner.prompt_engine.models import ModelCapability
from flowrunner.utils.metrics import MetricsCollector

logger = logging.getLogger("flowrunner.prompt_engine.token_budget")


@dataclass(frozen=True)
class CostCap:
    max_cost_per_request: float
    max_tokens_per_request: int
    emergency_alert_threshold: float


@dataclass
class BudgetResult:
    effective_output_tokens: int
    available_input_tokens: int
    estimated_cost: float
    within_limits: bool = True


@dataclass
class CostBreakdown:
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost


_GPT_4O = CostCap(10.0, 50_000, 50.0)
_CLAUDE_37_SONNET = CostCap(8.0, 100_000, 40.0)
_NOVA_PRO = CostCap(3.0, 150_000, 15.0)
_LLAMA4_MAVERICK = CostCap(2.0, 200_000, 10.0)

DEFAULT_COST_CAP = CostCap(5.0, 100_000, 25.0)

COST_CAPS: dict[str, CostCap] = {
    "gpt-4o": _GPT_4O,
    "us.anthropic.claude-3-7-sonnet-20250219-v1:0": _CLAUDE_37_SONNET,
    "anthropic.claude-3-7-sonnet-20250219-v1:0": _CLAUDE_37_SONNET,
    "us.amazon.nova-pro-v1:0": _NOVA_PRO,
    "amazon.nova-pro-v1:0": _NOVA_PRO,
    "us.meta.llama4-maverick-17b-instruct-v1:0": _LLAMA4_MAVERICK,
    "meta.llama4-maverick-17b-instruct-v1:0": _LLAMA4_MAVERICK,
}

# Secondary lookup by model family, for inference-profile and dated variants.
COST_CAP_PATTERNS: tuple[tuple[str, CostCap], ...] = (
    ("claude-3-7-sonnet", _CLAUDE_37_SONNET),
    ("nova-pro", _NOVA_PRO),
    ("llama4-maverick", _LLAMA4_MAVERICK),
    ("gpt-4o", _GPT_4O),
)


def calculate_cost(model: ModelCapability, input_tokens: int, output_tokens: int) -> CostBreakdown:
    """Estimate request cost from the model's pricing unit.

    ``1K tokens`` (and any unrecognised unit) scales with token counts;
    ``minute`` bills the output rate once; ``image`` and ``call`` are flat.
    """
    unit = model.pricing.unit
    in_rate = model.pricing.input_cost_per_unit
    out_rate = model.pricing.output_cost_per_unit

    if unit == "minute":
        return CostBreakdown(0.0, out_rate)
    if unit in ("image", "call"):
        return CostBreakdown(in_rate, out_rate)
    return CostBreakdown((input_tokens / 1000) * in_rate, (output_tokens / 1000) * out_rate)


class TokenBudgetEnforcer:
    """Checks a request against its model's caps.

    Checks run in a fixed order and the first violation wins: absolute token
    ceiling, then cost ceiling, then the model's context window.
    """

    def __init__(
        self,
        metrics: MetricsCollector | None = None,
        cost_caps: dict[str, CostCap] | None = None,
        default_cap: CostCap = DEFAULT_COST_CAP,
    ):
        self.metrics = metrics or MetricsCollector()
        self.cost_caps = dict(COST_CAPS if cost_caps is None else cost_caps)
        self.default_cap = default_cap

    def get_cost_cap(self, model_id: str) -> CostCap:
        cap = self.cost_caps.get(model_id)
        if cap is not None:
            return cap
        for pattern, pattern_cap in COST_CAP_PATTERNS:
            if pattern in model_id:
                logger.debug("Using pattern-matched cost cap %s for %s", pattern, model_id)
                return pattern_cap
        logger.warning("Using default cost cap for unknown model %s", model_id)
        return self.default_cap

    def enforce(self, model: ModelCapability, requested_output_tokens: int, input_tokens: int) -> BudgetResult:
        cap = self.get_cost_cap(model.id)
        cost = calculate_cost(model, input_tokens, requested_output_tokens).total_cost
        total_tokens = input_tokens + requested_output_tokens

        logger.info(
            "Budget check: model=%s tokens=%d (in=%d out=%d) cost=$%.4f cap=$%.2f/%d tokens",
            model.id, total_tokens, input_tokens, requested_output_tokens,
            cost, cap.max_cost_per_request, cap.max_tokens_per_request,
        )

        if cost > cap.emergency_alert_threshold:
            self._alert_high_cost(model.id, cost, cap.emergency_alert_threshold)

        if total_tokens > cap.max_tokens_per_request:
            self._reject("TOKEN_LIMIT_EXCEEDED")
            raise TokenBudgetError(
                "TOKEN_LIMIT_EXCEEDED",
                f"Request {total_tokens} tokens exceeds limit {cap.max_tokens_per_request}",
                {"total_tokens": total_tokens, "limit": cap.max_tokens_per_request, "model_id": model.id},
            )

        if cost > cap.max_cost_per_request:
            self._reject("COST_LIMIT_EXCEEDED")
            raise TokenBudgetError(
                "COST_LIMIT_EXCEEDED",
                f"Request ${cost:.4f} exceeds limit ${cap.max_cost_per_request}",
                {"estimated_cost": cost, "limit": cap.max_cost_per_request, "model_id": model.id},
            )

        if total_tokens > model.context_window:
            self._reject("CONTEXT_WINDOW_EXCEEDED")
            raise TokenBudgetError(
                "CONTEXT_WINDOW_EXCEEDED",
                f"Request {total_tokens} tokens exceeds context window {model.context_window}",
                {"total_tokens": total_tokens, "context_window": model.context_window, "model_id": model.id},
            )

        self.metrics.increment_counter("token_budget_passed_total")
        return BudgetResult(
            effective_output_tokens=requested_output_tokens,
            available_input_tokens=model.context_window - requested_output_tokens,
            estimated_cost=cost,
        )

    def would_exceed_budget(self, model: ModelCapability, input_tokens: int, output_tokens: int) -> dict:
        """Non-raising variant of :meth:`enforce` for previews."""
        cap = self.get_cost_cap(model.id)
        cost = calculate_cost(model, input_tokens, output_tokens).total_cost
        total_tokens = input_tokens + output_tokens
        return {
            "exceeds_token_limit": total_tokens > cap.max_tokens_per_request,
            "exceeds_cost_limit": cost > cap.max_cost_per_request,
            "exceeds_context_window": total_tokens > model.context_window,
            "estimated_cost": cost,
            "total_tokens": total_tokens,
        }

    def budget_stats(self, model_id: str) -> dict:
        return {"cost_cap": self.get_cost_cap(model_id), "is_default_cap": model_id not in self.cost_caps}

    def _reject(self, code: str) -> None:
        logger.error("Token budget violation: %s", code)
        self.metrics.increment_counter("token_budget_violations_total", labels={"code": code})

    def _alert_high_cost(self, model_id: str, cost: float, threshold: float) -> None:
        # Notification only; never blocks the request.
        logger.error(
            "OPS ALERT: high-cost request model=%s estimated_cost=$%.4f threshold=$%.2f",
            model_id, cost, threshold,
        )
        self.metrics.increment_counter("ops_alerts_total", labels={"model_id": model_id})
