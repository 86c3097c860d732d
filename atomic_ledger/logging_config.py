"""
Structured Logging Configuration Module

One JSON object per line for transfer attempts, retries and node stops, so
a drill run can be replayed from the log. `log_action` attaches the
structured fields that JSONFormatter lifts out of the record.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Record attributes set by log_action, emitted only when present
STRUCTURED_FIELDS = ("action", "resource", "attempt", "extra")


class JSONFormatter(logging.Formatter):
    """Renders a record as a single JSON line"""
    
    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "atomic_ledger",
                  fmt: str = "json") -> logging.Logger:
    """
    Attach a single stderr handler to the ledger's logger.
    
    Calling it again replaces the handler, so create_app can run per test.
    
    Args:
        level: Log level name; unknown names fall back to INFO
        logger_name: Root of the ledger's logger hierarchy
        fmt: "json" for structured output, "text" for plain lines
        
    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()
    
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if fmt == "text" else JSONFormatter())
    
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    
    return logger


def get_logger(name: str = "atomic_ledger") -> logging.Logger:
    """Logger under the atomic_ledger hierarchy, e.g. get_logger("atomic_ledger.transfers")"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               attempt: Optional[int] = None, extra: Optional[dict] = None):
    """
    Log an action with structured data.
    
    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Action being performed (transfer, stop_node, ...)
        resource: Resource being acted upon
        attempt: Protocol attempt number, when retrying
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return
    
    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )
    
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if attempt is not None:
        record.attempt = attempt
    if extra:
        record.extra = extra
        
    logger.handle(record)
