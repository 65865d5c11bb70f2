"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for the ledger and every program.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

from .config import CustodyConfig, get_config


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""
    
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
            "transaction_id": getattr(record, 'transaction_id', None),
            "program_id": getattr(record, 'program_id', None),
            "action": getattr(record, 'action', None),
            "account": getattr(record, 'account', None),
            "extra": getattr(record, 'extra', None)
        }
        
        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}
        
        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
            
        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "custody",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.
    
    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured output, anything else for plain text
        log_file: Optional path; logs go to stderr when omitted
        
    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    
    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    
    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    
    # Add handler to logger
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    
    # Prevent propagation to avoid duplicate logs
    logger.propagate = False
    
    return logger


def configure_logging(settings: Optional[CustodyConfig] = None) -> logging.Logger:
    """Apply the log level, format and destination from configuration"""
    settings = settings or get_config()
    return setup_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file
    )


def get_logger(name: str = "custody") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, program_id: Optional[str] = None,
               account: Optional[str] = None, transaction_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured data.
    
    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Instruction or operation being performed
        program_id: Program executing the action
        account: Account being acted upon
        transaction_id: Enclosing transaction identifier
        extra: Additional structured data
    """
    log_level = getattr(logging, level.upper())
    if not logger.isEnabledFor(log_level):
        return
    
    # Create a LogRecord with extra fields
    record = logger.makeRecord(
        logger.name, log_level,
        __name__, 0, message, (), None
    )
    
    # Add custom fields
    if action:
        record.action = action
    if program_id:
        record.program_id = program_id
    if account:
        record.account = account
    if transaction_id:
        record.transaction_id = transaction_id
    if extra:
        record.extra = extra
        
    logger.handle(record)
