"""IntentClassifier node: asks the model to label the user's message."""

from __future__ import annotations

import logging
import time
from typing import Any

from flowrunner.errors import NodeExecutionError
from flowrunner.prompt_engine.models import get_model
from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import Fail, NodeResult, proceed

logger = logging.getLogger("flowrunner.nodes.intent_classifier")

DEFAULT_CLASSIFIER_PROMPT = (
    "You are an intent classifier. Classify the user's message into exactly one of these "
    "categories: {{intents}}. Respond with only the category name in lowercase, nothing else."
)
CLASSIFIER_TEMPERATURE = 0.1
CLASSIFIER_MAX_TOKENS = 50


def match_intent(raw: str, intents: list[str], fallback: str) -> tuple[str, str]:
    """Map a model answer onto a configured intent.

    Returns ``(intent, strategy)`` where strategy is ``exact_match``,
    ``partial_match`` or ``fallback``.  The intent keeps its configured case.
    """
    answer = raw.strip().lower()
    by_lower = {i.lower(): i for i in intents}
    if answer in by_lower:
        return by_lower[answer], "exact_match"
    if answer:
        for lowered, original in by_lower.items():
            if lowered in answer or answer in lowered:
                return original, "partial_match"
    return by_lower.get(fallback.lower(), fallback), "fallback"


async def intent_classifier(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    config = ctx.config
    intents = config.get("intents")
    if not isinstance(intents, list) or not intents:
        return NodeResult(outcome=Fail(NodeExecutionError(
            ctx.node_id, "IntentClassifier requires intents configuration",
        )))
    intents = [str(i) for i in intents]
    fallback = str(config.get("fallbackIntent") or intents[0])
    metrics = ctx.services.metrics

    await ctx.progress(state, "STARTED", "Classifying intent…")

    user_input = (state.get("user_prompt") or "").strip()
    if not user_input:
        logger.warning("No user input to classify; using fallback intent %s", fallback)
        await ctx.progress(state, "COMPLETED", fallback, {"fallbackReason": "no_input"})
        metrics.increment_counter("intent_classifications_total", labels={"strategy": "fallback"})
        return proceed({"intent": fallback})

    if ctx.llm_client is None:
        return NodeResult(outcome=Fail(NodeExecutionError(
            ctx.node_id, "IntentClassifier requires an LLM client",
        )))

    model = get_model(config.get("modelId") or ctx.services.default_model)
    system_prompt = str(config.get("systemPrompt") or DEFAULT_CLASSIFIER_PROMPT)
    system_prompt = system_prompt.replace("{{intents}}", ", ".join(intents))

    t0 = time.monotonic()
    try:
        raw = await ctx.llm_client.invoke(
            [{"role": "system", "content": system_prompt}, {"role": "user", "content": user_input}],
            model=model.id,
            temperature=CLASSIFIER_TEMPERATURE,
            max_tokens=CLASSIFIER_MAX_TOKENS,
        )
    except Exception as exc:
        logger.error("Intent classification failed: %s", exc)
        await ctx.progress(state, "ERROR", f"Failed: {exc}")
        raise
    elapsed_ms = (time.monotonic() - t0) * 1000

    intent, strategy = match_intent(raw, intents, fallback)
    if strategy == "fallback":
        logger.warning("Model answer %r matches no intent; using fallback %s", raw, intent)
    else:
        logger.info("Classified intent %s (%s) in %.0fms", intent, strategy, elapsed_ms)

    metrics.increment_counter("intent_classifications_total", labels={"strategy": strategy})
    metrics.observe_histogram("intent_classification_ms", elapsed_ms)
    await ctx.progress(state, "COMPLETED", intent, {
        "classifiedIntent": intent,
        "matchingStrategy": strategy,
        "rawResponse": raw[:200],
        "modelId": model.id,
    })
    return proceed({"intent": intent})
