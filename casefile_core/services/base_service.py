# =============================================================================
# casefile_core/services/base_service.py
# Base class and result container for the offline engine's services
# =============================================================================

from __future__ import annotations
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from casefile_core.logging import get_logger, LogContext
from casefile_core.errors import CaseFileError


@dataclass
class ServiceResult:
    """
    What FieldSession returns to the page instead of raising.

    A result can succeed with warnings: a form download where some forms
    kept their previous version is still a successful download.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.success

    @property
    def recoverable(self) -> bool:
        """Whether retrying later (e.g. once back online) can succeed."""
        return self.success or bool(self.metadata.get("recoverable", True))

    @classmethod
    def ok(cls, data: Any = None, metadata: Optional[Dict[str, Any]] = None,
           warnings: Optional[List[str]] = None) -> ServiceResult:
        return cls(success=True, data=data, metadata=metadata or {}, warnings=warnings or [])

    @classmethod
    def fail(cls, error: str, error_code: str = "UNKNOWN",
             metadata: Optional[Dict[str, Any]] = None, data: Any = None) -> ServiceResult:
        return cls(success=False, data=data, error=error, error_code=error_code, metadata=metadata or {})

    @classmethod
    def from_exception(cls, e: Exception) -> ServiceResult:
        if isinstance(e, CaseFileError):
            return cls.fail(
                e.message,
                error_code=e.code,
                metadata=dict(e.details, recoverable=e.recoverable),
            )
        return cls.fail(str(e), error_code="UNKNOWN")


class BaseService(ABC):
    """
    Shared plumbing for VersionReconciler, AnswerStore, SyncDispatcher,
    BeneficiaryRegistry and FieldSession.

    Usage:
        class VersionReconciler(BaseService):
            def reconcile(self, summaries):
                with self.log_operation("Reconciling form versions", forms=len(summaries)):
                    ...
    """

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def log_operation(self, operation: str, level: Optional[int] = None, **context) -> LogContext:
        """Timed log lines around an operation; see LogContext."""
        if level is None:
            return LogContext(self.logger, operation, **context)
        return LogContext(self.logger, operation, level=level, **context)

    def safe_execute(
        self,
        operation: str,
        func: Callable[..., Any],
        *args,
        **kwargs
    ) -> ServiceResult:
        """
        Run func and wrap the outcome in a ServiceResult.

        The failure is logged (with traceback) by the operation context;
        CaseFileErrors keep their code, anything else becomes UNKNOWN.
        """
        try:
            with self.log_operation(operation):
                return ServiceResult.ok(func(*args, **kwargs))
        except Exception as e:
            return ServiceResult.from_exception(e)
