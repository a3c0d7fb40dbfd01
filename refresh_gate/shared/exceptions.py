"""
Exception hierarchy for the Refresh Gate.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so every failure of a refresh call surfaces as a
distinct, serializable error kind.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Refresh Gate."""

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SERVER_ERROR = "NETWORK_2003"

    # Token Endpoint Response Errors (3000-3099)
    HTTP_CLIENT_ERROR_STATUS = "HTTP_3001"
    HTTP_EMPTY_RESPONSE = "HTTP_3002"

    # Response Parsing Errors (4000-4099)
    PARSE_INVALID_JSON = "PARSE_4001"
    PARSE_MISSING_FIELD = "PARSE_4002"

    # Token Storage Errors (5000-5099)
    STORAGE_WRITE_FAILED = "STORAGE_5001"
    STORAGE_DELETE_FAILED = "STORAGE_5002"
    STORAGE_READ_FAILED = "STORAGE_5003"

    # Configuration Errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8003"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REAUTHORIZE = "reauthorize"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"


class RefreshGateError(Exception):
    """
    Base exception class for all Refresh Gate errors.

    Provides structured error information including error codes, context,
    and recovery suggestions. Nothing in the gate retries on these; the
    recovery actions are hints for the caller.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class ConfigurationError(RefreshGateError):
    """Missing or invalid configuration, such as an absent storage key."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_MISSING_REQUIRED_SETTING,
        config_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', None) or {}
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


class NetworkError(RefreshGateError):
    """IO failure while talking to the token endpoint."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            **kwargs
        )


class HttpStatusError(RefreshGateError):
    """The token endpoint answered with a 4xx status."""

    def __init__(self, status: int, reason: Optional[str] = None, **kwargs):
        self.status = status
        self.reason = reason
        context = kwargs.pop('context', None) or {}
        context['status'] = status
        context['reason'] = reason
        kwargs.setdefault(
            'user_message',
            f"The token endpoint rejected the refresh call ({status}). "
            "Check the client credentials and refresh token."
        )

        super().__init__(
            message=f"Refresh call returned HTTP Status code {status}. {reason}",
            error_code=ErrorCode.HTTP_CLIENT_ERROR_STATUS,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.REAUTHORIZE],
            context=context,
            **kwargs
        )


class EmptyResponseError(RefreshGateError):
    """The token endpoint returned no response message."""

    def __init__(self, message: str = "Empty response received for refresh access token call", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.HTTP_EMPTY_RESPONSE,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY],
            **kwargs
        )


class ParseError(RefreshGateError):
    """Malformed JSON or a missing required field in the refresh response."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.PARSE_INVALID_JSON,
        field_name: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', None) or {}
        if field_name:
            context['field_name'] = field_name

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.CONTACT_ADMIN],
            context=context,
            **kwargs
        )


class StorageError(RefreshGateError):
    """Token store read, write or delete failure."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        storage_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', None) or {}
        if storage_key:
            context['storage_key'] = storage_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.CONTACT_ADMIN],
            context=context,
            **kwargs
        )


def create_error_response(error: RefreshGateError) -> Dict[str, Any]:
    """
    Create a standardized error response dictionary from an exception.

    Args:
        error: The RefreshGateError exception

    Returns:
        Standardized error response dictionary
    """
    return error.to_dict()


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> RefreshGateError:
    """
    Convert a generic exception to a structured RefreshGateError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured RefreshGateError
    """
    if isinstance(exception, RefreshGateError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        FileNotFoundError: (ErrorCode.CONFIG_FILE_NOT_FOUND, ConfigurationError),
        ValueError: (ErrorCode.PARSE_INVALID_JSON, ParseError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, RefreshGateError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
