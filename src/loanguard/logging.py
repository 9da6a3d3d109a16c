"""Structured logging for the lending backend.

structlog renders through the stdlib logging tree so uvicorn, aiosqlite and
ccxt records share one handler. Request-scoped values (request_id, user_id)
are carried in structlog.contextvars and merged into every event.
"""

import logging

import structlog

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("aiosqlite", "ccxt", "uvicorn.access", "httpx")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        log_level: Root level name ("DEBUG", "INFO", ...). Unknown names fall back to INFO.
        log_format: "json" for machine-readable lines, anything else for the console renderer.
    """
    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_context(**values: str) -> None:
    """Bind per-request values (request_id, user_id) for all subsequent log lines."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    """Drop everything bound by bind_request_context."""
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
