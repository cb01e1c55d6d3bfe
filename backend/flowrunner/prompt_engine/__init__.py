"""Governed prompt construction.

Content-addressed prompt versions, pointer resolution, budget enforcement,
truncation, interpolation, PII scrubbing and the per-model circuit breaker,
composed by :class:`flowrunner.prompt_engine.engine.PromptEngine`.
"""
