from __future__ import annotations
import logging, sys
import structlog

from chanbridge.security.sanitize import sanitize_inline

# Fields that may carry user text; flattened before rendering.
_TEXT_FIELDS = ("content", "details", "reason")

def sanitize_text_fields(logger, method_name, event_dict):
    for key in _TEXT_FIELDS:
        if key in event_dict and event_dict[key] is not None:
            event_dict[key] = sanitize_inline(event_dict[key])
    return event_dict

def configure_logging(level: str = "INFO", json_logs: bool = True, instance_id: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stdout,
        format="%(message)s",
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        sanitize_text_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )
    if instance_id:
        structlog.contextvars.bind_contextvars(instance_id=instance_id)

def get_logger(name: str = "chanbridge", **initial):
    log = structlog.get_logger(name)
    return log.bind(**initial) if initial else log

def bind_correlation_id(correlation_id: str | None):
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id or "-")
