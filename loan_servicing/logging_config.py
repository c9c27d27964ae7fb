"""
Structured Logging Configuration Module

JSON-formatted structured logging for loan servicing operations. Service
mutations are logged with action, resource and user fields so a log line can
be matched to its audit event.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROOT_LOGGER = "loan_servicing"

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Structured fields copied from a record into the JSON payload
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for field_name in STRUCTURED_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_entry[field_name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging for the package

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger to configure
        log_format: "json" for structured lines, "text" for plain lines
        log_file: Write to this file instead of stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def configure_from_settings(settings) -> logging.Logger:
    """Apply the log settings of a LoanServicingConfig"""
    return setup_logging(settings.log_level, ROOT_LOGGER, settings.log_format, settings.log_file)


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[Dict[str, Any]] = None) -> None:
    """
    Log an action with structured data

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Log message
        user_id: Operator performing the action
        action: Action being performed, e.g. "apply_payment"
        resource: Resource acted upon, e.g. "installment:<id>"
        correlation_id: Correlation id for request tracing
        extra: Additional structured data
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(getattr(logging, level.upper()), message,
               extra={key: value for key, value in fields.items() if value is not None})
