"""Shared helpers: logging, metrics, tracing and log redaction."""
