# =============================================================================
# casefile_core/errors/exceptions.py
# Exception Hierarchy for the CaseFile field client
# =============================================================================

from typing import Optional, Dict, Any


class CaseFileError(Exception):
    """
    Base exception for all CaseFile errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "NET_001")
        details: Additional context as a dictionary
        recoverable: Whether retrying later can succeed
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CF_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# REMOTE GATEWAY EXCEPTIONS
# =============================================================================

class NetworkError(CaseFileError):
    """Raised when a gateway call fails in transport (retryable)"""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="NET_001",
            details=details,
            **kwargs,
        )


class IncorrectFormatError(CaseFileError):
    """Raised when the remote returns malformed or empty data"""

    def __init__(
        self,
        message: str,
        payload_kind: Optional[str] = None,
        field: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if payload_kind:
            details["payload_kind"] = payload_kind
        if field:
            details["field"] = field

        super().__init__(
            message=message,
            code="FMT_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# LOCAL STORAGE EXCEPTIONS
# =============================================================================

class PersistenceError(CaseFileError):
    """Raised when the durable record store or local cache fails"""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if entity:
            details["entity"] = entity
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# INPUT EXCEPTIONS
# =============================================================================

class ValidationError(CaseFileError):
    """Raised when required input is missing or invalid"""

    def __init__(
        self,
        message: str,
        fields: Optional[list] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if fields:
            details["fields"] = fields

        super().__init__(
            message=message,
            code="VAL_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(CaseFileError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# FORM STATE EXCEPTIONS
# =============================================================================

class FormNotDownloadedError(CaseFileError):
    """Raised when a form is opened before its definition is in the cache"""

    def __init__(self, form_id: int, **kwargs):
        details = kwargs.pop("details", {})
        details["form_id"] = form_id

        super().__init__(
            message=f"Form #{form_id} has not been downloaded",
            code="FORM_001",
            details=details,
            **kwargs,
        )


class FormOutdatedError(CaseFileError):
    """Raised when an edit targets a form version that has since been replaced"""

    def __init__(
        self,
        form_id: int,
        view_version: int,
        current_version: Optional[int],
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details.update({
            "form_id": form_id,
            "view_version": view_version,
            "current_version": current_version,
        })

        super().__init__(
            message=f"Form #{form_id} changed from v{view_version} to v{current_version}; reopen it",
            code="FORM_002",
            details=details,
            **kwargs,
        )
