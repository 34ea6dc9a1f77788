"""Rotating file + console logging for the API and scheduler threads."""
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import has_request_context, request

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime", "request_path"}


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_path = f"{request.method} {request.path}" if has_request_context() else "-"
        return True


class ExtraFieldsFormatter(logging.Formatter):
    """Append ``extra=`` fields as key=value pairs after the message."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        if not extras:
            return base
        return base + " | " + " ".join(f"{key}={value}" for key, value in sorted(extras.items()))


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "subsidy-platform.log")

    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = ExtraFieldsFormatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(request_path)s | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    context_filter = RequestContextFilter()

    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(context_filter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(context_filter)

    logger = logging.getLogger(app.name)
    # create_app may run more than once per process (tests, CLI); drop stale handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False

    # Module-level loggers (blockchain client, web3 helpers) share the same handlers.
    utils_logger = logging.getLogger("utils")
    utils_logger.handlers = logger.handlers
    utils_logger.setLevel(level)
    utils_logger.propagate = False

    logger.info("Logging initialized", extra={"path": log_path, "level": level_name})
    return logger
