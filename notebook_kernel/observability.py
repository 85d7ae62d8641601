import sys
import logging

import structlog
from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

HANDLER_NAME = "notebook_kernel"


def add_trace_context(logger, method_name, event_dict):
    """structlog processor: attach the ids of the active OpenTelemetry span."""
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict["trace_id"] = format(context.trace_id, "032x")
        event_dict["span_id"] = format(context.span_id, "016x")
    return event_dict


def configure_logging(level="info"):
    """
    Send kernel logs to stderr; stdout belongs to the interpreter process.

    structlog events render for humans on a terminal and as JSON lines
    otherwise. Records from stdlib loggers (asyncio among them) go through
    one JSON handler on the root logger; calling this again only updates
    the level.
    """
    numeric_level = logging.getLevelName(str(level).upper())

    if sys.stderr.isatty():
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_trace_context,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if not any(h.get_name() == HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(
            JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "name": "logger"},
            )
        )
        root.addHandler(handler)

    return structlog.get_logger("notebook_kernel")


def get_tracer(name=None):
    return trace.get_tracer(name or "notebook_kernel")
