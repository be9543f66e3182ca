"""
Structured logging for the copy-trading worker

Every log line is an event name plus key/value context, e.g.
``logger.info("position_opened", token_id=mint, entry_price=price)``.
structlog renders it and stdlib logging routes it to stdout and, optionally, a file.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from structlog.typing import Processor


LOG_FORMATS = ("json", "console")


def _build_handlers(level: int, output_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if output_file:
        Path(output_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(output_file, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
    return handlers


def _renderer(format: str) -> Processor:
    if format == "console":
        return structlog.dev.ConsoleRenderer(
            colors=sys.stdout.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    return structlog.processors.JSONRenderer()


def setup_logging(
    level: str = "INFO",
    format: str = "json",
    output_file: Optional[str] = None
) -> None:
    """
    Configure structlog and the root logger

    Safe to call more than once; previous root handlers are replaced.

    Args:
        level: DEBUG, INFO, WARNING or ERROR (unknown names fall back to INFO)
        format: "json" for production, "console" for a terminal
        output_file: Optional path that also receives every line
    """
    if format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {format!r}, expected one of {LOG_FORMATS}")

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in _build_handlers(numeric_level, output_file):
        root.addHandler(handler)
    root.setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for a module, usually ``get_logger(__name__)``"""
    return structlog.get_logger(name)


# Example usage
if __name__ == "__main__":
    setup_logging(level="DEBUG", format="console")
    log = get_logger("copytrader.demo")

    log.info("position_opened", token_id="7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr", entry_price=0.0000012)
    log.debug("price_cache_hit", source="pumpfun_raw", age_s=1.4)
    log.warning("price_backoff_active", failures=3)
