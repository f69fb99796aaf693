import logging
import logging.handlers
import sys
import os
from typing import Any, Dict, Optional
from config import get_config

class _ComponentDefaultFilter(logging.Filter):
    """Give records logged outside a component adapter a placeholder component"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "component"):
            record.component = "-"
        return True

def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """Setup application logging with proper configuration"""

    config = get_config()
    level = log_level or config.app.log_level
    log_file = log_file or config.app.log_file

    # Convert string level to logging constant
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(component)s] %(filename)s:%(lineno)d - %(funcName)s - %(message)s'
    )

    simple_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(component)s] %(message)s'
    )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(simple_formatter)
        console_handler.addFilter(_ComponentDefaultFilter())
        root_logger.addHandler(console_handler)

    # File handler with rotation
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(_ComponentDefaultFilter())
        root_logger.addHandler(file_handler)

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured - Level: {level}, File: {log_file or 'None'}")

def format_context(context: Dict[str, Any]) -> str:
    """Render a context dict as space separated key=value pairs"""
    return " ".join(f"{key}={value}" for key, value in context.items())

class ComponentLogger(logging.LoggerAdapter):
    """Logger handed to each Epic component.

    The component name travels as the ``component`` record attribute and any
    ``context={...}`` keyword is attached to the record and appended to the
    message, e.g. ``log.warning("FHIR rate limited", context={"attempt": 1})``.
    """

    def __init__(self, component: str, logger: Optional[logging.Logger] = None):
        super().__init__(logger or logging.getLogger(f"epic.{component}"), {"component": component})
        self.component = component

    def process(self, msg, kwargs):
        context = kwargs.pop("context", None) or {}
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        extra["context"] = context
        kwargs["extra"] = extra
        if context:
            msg = f"{msg} ({format_context(context)})"
        return msg, kwargs

def get_component_logger(component: str) -> ComponentLogger:
    """Build the logger a component receives when none is injected"""
    return ComponentLogger(component)
