"""structlog configuration for the backbone.

Every entry is one JSON object on stdout in production (console renderer in
debug), carries the request's correlation id and the service name, and has
secrets and signature material masked. Stdlib loggers (uvicorn, SQLAlchemy,
stripe, httpx) are routed through the same processor chain.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "escrow-backbone"

# Keys whose values must never reach a log line
_SENSITIVE_KEYS = frozenset({
    "authorization",
    "card",
    "client_secret",
    "secret",
    "signature",
    "stripe_signature",
    "webhook_secret",
    "worker_secret",
    "x_worker_secret",
})

_QUIET_LOGGERS = {
    "uvicorn.access": "WARNING",
    "httpx": "WARNING",
    "stripe": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "botocore": "WARNING",
}


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def mask_sensitive(logger, method, event_dict):
    """Replace the value of any sensitive key with a fixed mask."""
    for key in event_dict.keys() & _SENSITIVE_KEYS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _processor_chain(service: str) -> list:
    def add_service(logger, method, event_dict):
        event_dict.setdefault("service", service)
        return event_dict

    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        add_service,
        mask_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True, service: str = SERVICE_NAME) -> None:
    """Install the processor chain for structlog and the stdlib root logger.

    Must run before modules create their loggers: structlog caches the chain
    on first use.
    """
    chain = _processor_chain(service)
    if json_logs:
        render = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        render = [structlog.dev.ConsoleRenderer()]

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
                "foreign_pre_chain": chain,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": level} for name, level in _QUIET_LOGGERS.items()},
    })

    structlog.configure(
        processors=[*chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
