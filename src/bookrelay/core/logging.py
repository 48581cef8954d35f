"""
Structured logging for bookrelay.

structlog renders on top of stdlib logging. Output goes to stderr because
stdout belongs to the terminal observer in `monitor` mode. The chatty
third-party loggers (aiohttp access lines, redis) are held at WARNING unless
the relay itself runs at DEBUG.
"""
import logging
import sys
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from bookrelay.core.config import ConfigManager

NOISY_LOGGERS = ("aiohttp.access", "aiohttp.server", "redis")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog and the stdlib root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Unknown names fall back to INFO.
        json_output: Render one JSON object per line instead of console text.
        log_file: Also append every record to this file.

    Returns:
        The root ``bookrelay`` logger.
    """
    log_level = getattr(logging, str(level).upper(), None)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setLevel(log_level)

    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    third_party_level = log_level if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("bookrelay")


def setup_logging_from_config(config: "ConfigManager") -> structlog.stdlib.BoundLogger:
    """Apply the ``[bookrelay]`` log_level / log_json / log_file keys."""
    return setup_logging(
        level=config.get("bookrelay.log_level", "INFO"),
        json_output=config.get_bool("bookrelay.log_json", False),
        log_file=config.get("bookrelay.log_file"),
    )


def get_logger(name: str = "bookrelay") -> structlog.stdlib.BoundLogger:
    """Logger named under the ``bookrelay.`` hierarchy."""
    if name != "bookrelay" and not name.startswith("bookrelay."):
        name = f"bookrelay.{name}"
    return structlog.get_logger(name)
