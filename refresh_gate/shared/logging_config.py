"""
Logging configuration for the Refresh Gate.

This module provides structured logging with audit trails for token events,
operation tracking for refresh calls, and configurable output formats.
Token values are never written to any log record.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from refresh_gate.shared.exceptions import RefreshGateError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Types of events that should be audited."""
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REUSE = "token_reuse"
    TOKEN_INVALIDATION = "token_invalidation"


_RESERVED_RECORD_FIELDS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created', 'msecs',
    'relativeCreated', 'thread', 'threadName', 'processName', 'process',
    'getMessage', 'exc_info', 'exc_text', 'stack_info', 'error_info',
    'audit_info', 'operation_context', 'taskName', 'message', 'asctime',
])


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs with consistent fields.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': {'pid': os.getpid()},
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, RefreshGateError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if hasattr(record, 'operation_context'):
            log_entry['operation'] = record.operation_context

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable formatter that appends structured error details.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-15s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, RefreshGateError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        if hasattr(record, 'operation_context'):
            formatted += f"\n  Operation: {json.dumps(record.operation_context, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Logger for token lifecycle events.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        storage_key: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            storage_key: Store key of the token involved
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'storage_key': storage_key,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_token_refresh(
        self,
        storage_key: str,
        token_endpoint: str,
        success: bool = True,
        failure_reason: Optional[str] = None
    ):
        """Log a refresh call against the token endpoint."""
        context = {'token_endpoint': token_endpoint}
        if failure_reason:
            context['failure_reason'] = failure_reason

        self.log_event(
            event_type=AuditEventType.TOKEN_REFRESH,
            message=f"Token refresh {'successful' if success else 'failed'} for key: {storage_key}",
            storage_key=storage_key,
            result="success" if success else "failure",
            additional_context=context
        )

    def log_token_reuse(self, storage_key: str):
        """Log reuse of a cached token."""
        self.log_event(
            event_type=AuditEventType.TOKEN_REUSE,
            message=f"Reusing saved access token for key: {storage_key}",
            storage_key=storage_key,
            result="success"
        )

    def log_token_invalidation(self, storage_key: str, removed: bool):
        """Log explicit invalidation of a stored token."""
        self.log_event(
            event_type=AuditEventType.TOKEN_INVALIDATION,
            message=f"Stored access token invalidated for key: {storage_key}",
            storage_key=storage_key,
            result="removed" if removed else "absent"
        )


class OperationLogger:
    """
    Logger for tracking refresh operations and their duration.
    """

    def __init__(self, logger_name: str = "operations"):
        self.logger = logging.getLogger(logger_name)

    def log_operation_start(
        self,
        operation_type: str,
        operation_id: str,
        context: Optional[Dict[str, Any]] = None
    ):
        """Log the start of an operation."""
        operation_context = {
            'operation_id': operation_id,
            'operation_type': operation_type,
            'stage': 'started',
            'start_time': datetime.now().isoformat(),
            'context': context or {}
        }
        self.logger.debug(
            f"Operation {operation_type} started: {operation_id}",
            extra={'operation_context': operation_context}
        )

    def log_operation_complete(
        self,
        operation_id: str,
        success: bool,
        duration_seconds: Optional[float] = None,
        result_summary: Optional[str] = None
    ):
        """Log operation completion."""
        operation_context = {
            'operation_id': operation_id,
            'stage': 'completed',
            'success': success,
            'duration_seconds': duration_seconds,
            'result_summary': result_summary,
            'end_time': datetime.now().isoformat(),
        }

        status = "completed successfully" if success else "failed"
        message = f"Operation {operation_id} {status}"
        if duration_seconds is not None:
            message += f" (took {duration_seconds:.2f}s)"
        if result_summary:
            message += f": {result_summary}"

        level = logging.DEBUG if success else logging.WARNING
        self.logger.log(level, message, extra={'operation_context': operation_context})


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for the gate and its command-line entry point.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to enable console logging
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        # stderr keeps stdout clean for command output
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    loggers = {
        'root': root_logger,
        'gate': logging.getLogger('refresh_gate'),
        'operations': logging.getLogger('operations'),
    }

    audit_logger = logging.getLogger('audit')
    for handler in audit_logger.handlers[:]:
        audit_logger.removeHandler(handler)
    audit_logger.disabled = not enable_audit
    audit_logger.propagate = True

    if enable_audit:
        audit_logger.setLevel(logging.INFO)
        audit_formatter = StructuredFormatter()

        if audit_file:
            audit_path = Path(audit_file)
            audit_path.parent.mkdir(parents=True, exist_ok=True)

            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            audit_handler.setFormatter(audit_formatter)
            audit_logger.addHandler(audit_handler)
            audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: RefreshGateError,
    storage_key: Optional[str] = None
):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        storage_key: Optional store key for context
    """
    logger.error(error.message, extra={'error_info': error, 'storage_key': storage_key})
