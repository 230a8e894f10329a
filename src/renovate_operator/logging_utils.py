"""
Logging utilities for the renovate operator.

Provides:
- Structured logging with key=value fields
- Correlation context (RenovateJob, project) via contextvars
- Optional JSON output
"""
import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Optional


# Context variables for correlation (thread-safe)
_renovatejob: ContextVar[Optional[str]] = ContextVar('renovatejob', default=None)
_project: ContextVar[Optional[str]] = ContextVar('project', default=None)

VALID_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds correlation context and structured fields.

    Format: [timestamp] [level] [component] correlation key=value message
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        return self._format_human(record)

    def _timestamp(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        return f"{timestamp}.{int(record.msecs):03d}Z"

    def _format_human(self, record: logging.LogRecord) -> str:
        parts = [
            f"[{self._timestamp(record)}]",
            f"[{record.levelname}]",
            f"[{record.name.split('.')[-1]}]"
        ]

        for key, value in get_correlation().items():
            if value:
                parts.append(f"{key}={value}")

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            parts.extend(f"{key}={value}" for key, value in fields.items())

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result

    def _format_json(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self._timestamp(record),
            "level": record.levelname,
            "component": record.name.split('.')[-1],
            "message": record.getMessage()
        }

        for key, value in get_correlation().items():
            if value:
                log_entry[key] = value

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            log_entry.update(fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, separators=(',', ':'), default=str)


def get_correlation() -> Dict[str, Optional[str]]:
    """Current correlation values."""
    return {
        'renovatejob': _renovatejob.get(),
        'project': _project.get(),
    }


@contextmanager
def correlation_context(renovatejob: Optional[str] = None, project: Optional[str] = None):
    """
    Context manager for temporary correlation values.

    Values are restored when the context exits.

    Example:
        with correlation_context(renovatejob="renovate-default"):
            logger.info("Processing projects")  # renovatejob=... included
    """
    tokens = []
    if renovatejob is not None:
        tokens.append((_renovatejob, _renovatejob.set(renovatejob)))
    if project is not None:
        tokens.append((_project, _project.set(project)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields):
    """
    Log a message with structured fields.

    Example:
        log_with_fields(logger, logging.INFO, "Discovery finished",
                        projects=12)
    """
    logger.log(level, message, extra={'fields': fields})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Setup logging configuration for the operator.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Enable JSON output instead of human-readable
        log_file: Optional log file path (in addition to stdout)
        module_levels: Per-module log levels, e.g. {'executor': 'DEBUG'}

    Environment Variables:
        RENOVATE_OPERATOR_LOG_LEVEL: Override log level
        RENOVATE_OPERATOR_LOG_JSON: Enable JSON output (1 or 0)
    """
    level = os.getenv('RENOVATE_OPERATOR_LOG_LEVEL', level).upper()
    json_output = os.getenv('RENOVATE_OPERATOR_LOG_JSON', '0') == '1' or json_output

    if level not in VALID_LEVELS:
        logging.warning(f"Invalid log level '{level}', using INFO")
        level = 'INFO'

    formatter = StructuredFormatter(json_output=json_output)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = os.path.dirname(log_file)
            if log_path and not os.path.exists(log_path):
                os.makedirs(log_path, mode=0o755)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except OSError as e:
            logging.error(f"Failed to setup file logging: {e}")

    if module_levels:
        for module_name, module_level in module_levels.items():
            module_level_upper = module_level.upper()
            if module_level_upper in VALID_LEVELS:
                logging.getLogger(f'renovate_operator.{module_name}').setLevel(
                    getattr(logging, module_level_upper)
                )
                logging.debug(f"Set log level for {module_name}: {module_level_upper}")
            else:
                logging.warning(f"Invalid log level for module {module_name}: {module_level}")

    # The kubernetes client is chatty at DEBUG
    if level != 'DEBUG':
        logging.getLogger('kubernetes').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)

    logging.info(f"Logging initialized: level={level}, json={json_output}, file={log_file}")
