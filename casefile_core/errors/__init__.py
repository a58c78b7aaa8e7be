# =============================================================================
# casefile_core/errors/__init__.py
# Centralized Error Handling for the CaseFile field client
# =============================================================================

from .exceptions import (
    CaseFileError,
    NetworkError,
    IncorrectFormatError,
    PersistenceError,
    ValidationError,
    ConfigurationError,
    FormNotDownloadedError,
    FormOutdatedError,
)

from .handlers import (
    handle_error,
    safe_execute,
    ErrorContext,
)

__all__ = [
    # Exceptions
    "CaseFileError",
    "NetworkError",
    "IncorrectFormatError",
    "PersistenceError",
    "ValidationError",
    "ConfigurationError",
    "FormNotDownloadedError",
    "FormOutdatedError",
    # Handlers
    "handle_error",
    "safe_execute",
    "ErrorContext",
]
