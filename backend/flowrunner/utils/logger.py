import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

# Context variables for correlation
ctx_workflow_id = contextvars.ContextVar("workflow_id", default=None)
ctx_conversation_id = contextvars.ContextVar("conversation_id", default=None)
ctx_node_id = contextvars.ContextVar("node_id", default=None)
ctx_correlation_id = contextvars.ContextVar("correlation_id", default=None)

_CONTEXT_FIELDS = (
    ("workflow_id", ctx_workflow_id),
    ("conversation_id", ctx_conversation_id),
    ("node_id", ctx_node_id),
    ("correlation_id", ctx_correlation_id),
)


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        # Inject context variables if present
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_record[field] = value


def get_correlation_context() -> dict[str, str]:
    """Snapshot of the correlation fields currently bound."""
    return {field: var.get() for field, var in _CONTEXT_FIELDS if var.get()}


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format.lower() == "json":
        formatter = CorrelationJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    # Silence third-party noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger
