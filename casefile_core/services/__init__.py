# =============================================================================
# casefile_core/services/__init__.py
# Service base classes shared by the offline engine
# =============================================================================

from .base_service import BaseService, ServiceResult

__all__ = [
    "BaseService",
    "ServiceResult",
]
