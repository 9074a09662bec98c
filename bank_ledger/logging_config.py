"""
Structured Logging Configuration Module

JSON (or plain text) log lines for the ``ledger`` logger tree. Ledger code
attaches who/what/where fields to records through ``log_action``.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Record attributes copied into JSON output when set
STRUCTURED_FIELDS = ("correlation_id", "principal", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _build_handler(log_format: str, log_file: Optional[str]) -> logging.Handler:
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    logger_name: str = "ledger",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Install a single handler on the ledger logger

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Root of the logger tree to configure
        log_format: "json" for structured output, "text" for plain lines
        log_file: Append to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    numeric_level = getattr(logging, level.upper())

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    logger.addHandler(_build_handler(log_format, log_file))
    logger.setLevel(numeric_level)
    # Records stop here; the root logger would print them twice
    logger.propagate = False

    return logger


def get_logger(name: str = "ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               principal: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit one record carrying structured fields

    Args:
        logger: Target logger
        level: Level name (info, warning, error, ...)
        message: Human readable message
        principal: Caller identity the action was performed for
        action: Ledger action (debit, credit, transfer, retry, ...)
        resource: What was acted upon, e.g. ``account:<id>``
        correlation_id: Request tracing identifier
        extra: Any further key/value details
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    fields = {
        "principal": principal,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    for name, value in fields.items():
        if value:
            setattr(record, name, value)

    logger.handle(record)
