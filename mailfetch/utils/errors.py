"""Error taxonomy for mailbox retrieval."""

from enum import Enum
from typing import Any, Dict, Optional

from mailfetch.utils.logging import get_logger

_logger = None


def _get_logger():
    """Get logger with lazy initialisation."""
    global _logger
    if _logger is None:
        _logger = get_logger(__name__)
    return _logger


## Error Categories


class ErrorCategory(Enum):
    """Categories of errors for better handling."""

    NETWORK = "network"
    AUTHENTICATION = "authentication"
    PROTOCOL = "protocol"
    VALIDATION = "validation"
    DECODING = "decoding"
    CONFIGURATION = "configuration"
    FILE_SYSTEM = "file_system"
    UNKNOWN = "unknown"


## Custom Exceptions


class MailFetchError(Exception):
    """Base exception for all mailfetch errors."""

    category = ErrorCategory.UNKNOWN
    user_message = "An error occurred"
    hint: Optional[str] = None

    def __init__(
        self,
        message: str | None = None,
        details: Dict[str, Any] | None = None,
        hint: str | None = None,
    ):
        """Initialise MailFetchError with optional message, details and hint."""
        self.message = message or self.user_message
        self.details = details or {}
        if hint is not None:
            self.hint = hint
        super().__init__(self.message)

    def describe(self) -> str:
        """Message followed by the actionable hint, if any."""
        if self.hint:
            return f"{self.message}. {self.hint}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error details to a dictionary."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "hint": self.hint,
            "details": self.details,
        }


## Network Errors


class NetworkError(MailFetchError):
    """Base exception for network-related errors."""

    category = ErrorCategory.NETWORK
    user_message = "A network error occurred"


class ConnectionFailedError(NetworkError):
    """DNS failure, refused or unreachable connection."""

    user_message = "Failed to connect to mail server"
    hint = "Check server address, port, and firewall."

    @classmethod
    def for_endpoint(cls, host: str, port: int, reason: str) -> "ConnectionFailedError":
        return cls(
            f"Cannot connect to {host}:{port} ({reason})",
            details={"host": host, "port": port, "reason": reason},
        )


class NetworkTimeoutError(NetworkError):
    """Exception for network timeout errors."""

    user_message = "The connection timed out"
    hint = "Check host, port, and encryption setting."


class EncryptionMismatchError(NetworkError):
    """TLS handshake failed, usually because the encryption mode is wrong."""

    user_message = "SSL/TLS mismatch"
    hint = (
        "Try changing the encryption setting: "
        "ssl = implicit TLS, tls = STARTTLS, none = plain text."
    )


class ProtocolError(NetworkError):
    """Unexpected server response or premature end of stream."""

    category = ErrorCategory.PROTOCOL
    user_message = "Unexpected response from mail server"


class IMAPError(ProtocolError):
    """Exception for IMAP protocol errors."""

    user_message = "IMAP operation failed"


## Authentication Errors


class AuthenticationError(MailFetchError):
    """Server rejected the supplied credentials."""

    category = ErrorCategory.AUTHENTICATION
    user_message = "Authentication failed"
    hint = "Check username and password."


## Validation Errors


class ValidationError(MailFetchError):
    """Base exception for validation-related errors."""

    category = ErrorCategory.VALIDATION
    user_message = "Invalid input"


class MissingRequiredFieldError(ValidationError):
    """Exception for missing required fields."""

    user_message = "A required field is missing"


## Decoding Errors


class DecodeError(MailFetchError):
    """Raised inside the decoder only; callers always receive a best-effort string."""

    category = ErrorCategory.DECODING
    user_message = "Failed to decode message content"


## Configuration Errors


class ConfigurationError(MailFetchError):
    """Base exception for configuration-related errors."""

    category = ErrorCategory.CONFIGURATION
    user_message = "A configuration error occurred"


class InvalidConfigError(ConfigurationError):
    """Exception for invalid configuration settings."""

    user_message = "Invalid configuration settings"


class FileSystemError(MailFetchError):
    """Base exception for file system-related errors."""

    category = ErrorCategory.FILE_SYSTEM
    user_message = "A file system error occurred"


## Error Handler


class ErrorHandler:
    """Centralized error handling and logging."""

    @staticmethod
    def handle(
        error: Exception, context: str = "", log_traceback: bool = False
    ) -> Dict[str, Any]:
        """Log an error and return its dictionary form."""
        if isinstance(error, MailFetchError):
            _get_logger().error(f"{context}: {error.message}", extra=error.details)
            if log_traceback:
                _get_logger().exception(error)
            return error.to_dict()

        _get_logger().error(f"{context}: {str(error)}")
        if log_traceback:
            _get_logger().exception(error)
        return {
            "error_type": "UnknownError",
            "category": ErrorCategory.UNKNOWN.value,
            "message": str(error),
            "hint": None,
            "details": {"context": context},
        }


## Utility Functions


def format_error_message(error: Exception) -> str:
    """Format an error message for display."""
    if isinstance(error, MailFetchError):
        return error.describe()
    return f"Unexpected error: {error}"
