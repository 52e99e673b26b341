"""
Logging configuration using structlog.
"""

import sys
import logging
from typing import Any, Dict, List, Optional, Union
from pathlib import Path

import structlog
from structlog.types import Processor


# Patterns to redact from logs
REDACT_PATTERNS = [
    "GEMINI_API_KEY",
    "api_key",
    "apikey",
    "secret",
    "password",
    "token",
    "assertion",
    "private_key",
    "authorization",
]


def redact_secrets(
    logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact sensitive information from log entries."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            for pattern in REDACT_PATTERNS:
                if pattern.lower() in key.lower():
                    event_dict[key] = "[REDACTED]"
                    break
    return event_dict


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[Path, str]] = None,
    console: bool = True,
) -> None:
    """
    Configure structlog for the application.
    
    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        console: Emit to stderr. The terminal front end turns this off so
            log lines do not tear the live display.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )
    
    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]
    
    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    
    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(getattr(logging, level.upper()))
    
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.dev.ConsoleRenderer(colors=True),
                foreign_pre_chain=shared_processors,
            )
        )
        root_logger.addHandler(console_handler)
    
    if log_file:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        root_logger.addHandler(file_handler)
    
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
