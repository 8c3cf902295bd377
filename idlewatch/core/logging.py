"""Structured logging with structlog."""

import logging
import sys

import structlog


def verbosity_to_level(verbosity: int) -> int:
    """Map the -v flag onto a stdlib logging level."""
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(verbosity: int = 1, log_format: str = "console") -> None:
    """Configure structlog for the CLI process."""
    level = verbosity_to_level(verbosity)

    # Set up standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_format == "json":
        formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
        )
    else:
        formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        )

    for handler in logging.root.handlers:
        handler.setFormatter(formatter)

    # kubernetes and httpx are chatty at debug level
    for noisy in ("kubernetes", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.INFO))

    structlog.get_logger(__name__).info(
        "logging.configured", verbosity=verbosity, level=logging.getLevelName(level)
    )
