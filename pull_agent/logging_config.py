"""
Centralized logging configuration for the pull agent.

Implements file-based logging with rotation, dedicated streams for
deployments, canaries and API access, and an in-memory buffer of recent
records that backs the ``/logs`` endpoint and the live event stream.
"""
# mypy: ignore-errors

import copy
import json
import logging
import logging.handlers
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

DEPLOYMENT_LOGGER = "pull_agent.deployment"
CANARY_LOGGER = "pull_agent.canary"
API_LOGGER = "pull_agent.api_access"

_EXTRA_FIELDS = ("deployment_id", "rollout_id", "phase", "duration_ms", "request_id")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        if self.use_colors and record.levelname in self.COLORS:
            # Other handlers share the record
            record = copy.copy(record)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


class RecentLogBuffer(logging.Handler):
    """
    Keep the most recent log records in memory.

    Each record is stored as a small dict (timestamp, level, logger, message)
    and handed to the registered listener, which the service points at the
    event bus so WebSocket viewers see log lines as they happen.
    """

    def __init__(self, capacity: int = 500, level: int = logging.INFO):
        super().__init__(level=level)
        self.capacity = capacity
        self._records: Deque[Dict[str, Any]] = deque(maxlen=capacity)
        self._records_lock = threading.Lock()
        self._listener: Optional[Callable[[Dict[str, Any]], None]] = None

    def set_listener(self, listener: Optional[Callable[[Dict[str, Any]], None]]) -> None:
        self._listener = listener

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            with self._records_lock:
                self._records.append(entry)
            if self._listener is not None:
                self._listener(entry)
        except Exception:
            self.handleError(record)

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Return up to ``limit`` records, oldest first."""
        with self._records_lock:
            records = list(self._records)
        if limit <= 0:
            return []
        return records[-limit:]

    def clear(self) -> None:
        with self._records_lock:
            self._records.clear()


_recent_buffer = RecentLogBuffer()


def get_recent_log_buffer() -> RecentLogBuffer:
    """The process-wide buffer installed by setup_logging."""
    return _recent_buffer


def _rotating_handler(path: Path, max_bytes: int, backup_count: int, formatter, level=None):
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setFormatter(formatter)
    if level is not None:
        handler.setLevel(level)
    return handler


def setup_logging(
    log_dir: str = "/var/log/pull-agent",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 10,
) -> None:
    """
    Configure logging for the pull agent.

    When the log directory cannot be created or written, falls back to
    console-only logging via ``basicConfig``.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()
    log_path = Path(log_dir)

    try:
        log_path.mkdir(parents=True, exist_ok=True)
        main_handler = _rotating_handler(
            log_path / "agent.log", max_bytes, backup_count, file_formatter,
            getattr(logging, file_level),
        )
        error_handler = _rotating_handler(
            log_path / "error.log", max_bytes, backup_count, file_formatter, logging.ERROR
        )
        stream_handlers = {
            DEPLOYMENT_LOGGER: _rotating_handler(
                log_path / "deployment.log", max_bytes, backup_count, file_formatter
            ),
            CANARY_LOGGER: _rotating_handler(
                log_path / "canary.log", max_bytes, backup_count, file_formatter
            ),
            API_LOGGER: _rotating_handler(
                log_path / "api-access.log", max_bytes, backup_count, file_formatter
            ),
        }
    except OSError as e:
        logging.basicConfig(
            level=getattr(logging, console_level),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[console_handler, _recent_buffer],
        )
        root_logger.warning(f"Log directory {log_dir} not writable ({e}), logging to console only")
        return

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(main_handler)
    root_logger.addHandler(error_handler)
    root_logger.addHandler(_recent_buffer)

    # Dedicated streams do not propagate, so they carry their own console,
    # error and buffer handlers.
    for name, handler in stream_handlers.items():
        stream_logger = logging.getLogger(name)
        stream_logger.handlers.clear()
        stream_logger.addHandler(handler)
        stream_logger.setLevel(logging.DEBUG if name != API_LOGGER else logging.INFO)
        stream_logger.propagate = False
        if name != API_LOGGER:
            stream_logger.addHandler(console_handler)
            stream_logger.addHandler(error_handler)
            stream_logger.addHandler(_recent_buffer)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir}, JSON: {use_json}"
    )


class LogContext:
    """Context manager for adding contextual information to logs."""

    def __init__(self, logger: logging.Logger, **kwargs):
        """
        Initialize log context.

        Args:
            logger: Logger to add context to
            **kwargs: Context fields to add to all logs
        """
        self.logger = logger
        self.context = kwargs
        self.old_factory = None

    def __enter__(self):
        """Enter context and inject fields."""
        old_factory = logging.getLogRecordFactory()
        self.old_factory = old_factory

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            for key, value in self.context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and restore factory."""
        if self.old_factory:
            logging.setLogRecordFactory(self.old_factory)


def log_deployment_operation(
    operation: str,
    deployment_id: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
) -> None:
    """
    Log a deployment lifecycle operation to the deployment stream.

    Args:
        operation: Operation type (started, phase_completed, failed, ...)
        deployment_id: Deployment identifier
        details: Additional operation details
        level: Log level (INFO, WARNING, ERROR)
    """
    logger = logging.getLogger(DEPLOYMENT_LOGGER)

    message = f"Deployment {deployment_id}: {operation}"
    extra: Dict[str, Any] = {"deployment_id": deployment_id}

    if details:
        extra.update({k: v for k, v in details.items() if k in _EXTRA_FIELDS})
        message += f" - {json.dumps(details, default=str)}"

    log_method = getattr(logger, level.lower())
    log_method(message, extra=extra)


def log_canary_operation(
    operation: str,
    rollout_id: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
) -> None:
    """
    Log a canary rollout operation to the canary stream.

    Args:
        operation: Operation type (start, progress, rollback, promote, ...)
        rollout_id: Rollout identifier
        details: Additional operation details
        level: Log level (INFO, WARNING, ERROR)
    """
    logger = logging.getLogger(CANARY_LOGGER)

    message = f"Canary {rollout_id}: {operation}"
    if details:
        message += f" - {json.dumps(details, default=str)}"

    log_method = getattr(logger, level.lower())
    log_method(message, extra={"rollout_id": rollout_id})
