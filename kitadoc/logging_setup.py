"""KitaDoc Audio Pipeline - Logging configuration."""

from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

SUPPORTED_FORMATS = ("json", "text")

_HANDLER_MARKER = "_kitadoc_handler"


def configure_logging(level: str = "info", fmt: str = "json") -> logging.Logger:
    """Install a single stdout handler on the root and uvicorn loggers.

    Args:
        level: Log level name (case-insensitive).
        fmt: "json" for structured output, "text" for plain lines.

    Returns:
        The configured root logger.

    Raises:
        ValueError: If level or fmt is not recognised.
    """
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported log format: {fmt}. Must be 'json' or 'text'.")
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter(JSON_FORMAT)
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    setattr(handler, _HANDLER_MARKER, True)

    # Replace our previous handler only; handlers installed by others stay
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = [
        h for h in root_logger.handlers if not getattr(h, _HANDLER_MARKER, False)
    ] + [handler]

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        u_logger = logging.getLogger(logger_name)
        u_logger.setLevel(numeric_level)
        u_logger.handlers = [handler]
        u_logger.propagate = False

    return root_logger
