"""Workflow graph runtime: registry, state, outcomes and the LangGraph executor."""
