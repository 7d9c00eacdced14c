"""structlog setup shared by the API, the processing worker and the admin CLI."""

import logging

import structlog

from conquest.config import Settings

# Libraries that log every statement or job poll at INFO.
_NOISY_LOGGERS = ("sqlalchemy.engine", "arq.worker", "httpx")


def _environment_adder(environment: str) -> structlog.types.Processor:
    def add_environment(_logger, _method, event_dict):
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_environment


def setup_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging with JSON output, or console output in debug."""
    use_console = settings.debug or settings.log_format == "console"
    final_processor: structlog.types.Processor = (
        structlog.dev.ConsoleRenderer(colors=False) if use_console else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _environment_adder(settings.environment),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            final_processor,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
