# =============================================================================
# casefile_core/errors/handlers.py
# Error Handling Utilities for the CaseFile field client
# =============================================================================

from __future__ import annotations
import traceback
from typing import Any, Callable, Dict, Optional, TypeVar
import streamlit as st

from casefile_core.logging import get_logger
from .exceptions import CaseFileError

logger = get_logger(__name__)

T = TypeVar("T")

# What the case worker should do next, by error code
USER_HINTS: Dict[str, str] = {
    "NET_001": "Your answers are kept on this device and will be sent when the connection returns.",
    "FMT_001": "The server sent data this app cannot read. Try downloading forms again later.",
    "STORE_001": "The answer was not saved on this device.",
    "VAL_001": "Please complete the highlighted fields.",
    "CONFIG_001": "The app is not configured for a server yet.",
    "FORM_001": "Download forms while online before opening this one.",
    "FORM_002": "This form was updated. It has been reopened with the new questions.",
}


def describe_error(error: Exception, user_message: Optional[str] = None) -> Dict[str, Any]:
    """
    Reduce an exception to what the UI and the log need.

    Returns:
        dict with code, message, hint, details and recoverable
    """
    if isinstance(error, CaseFileError):
        return {
            "code": error.code,
            "message": user_message or error.message,
            "hint": USER_HINTS.get(error.code),
            "details": error.details,
            "recoverable": error.recoverable,
        }
    return {
        "code": "UNKNOWN",
        "message": user_message or str(error),
        "hint": None,
        "details": {"traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__))},
        "recoverable": True,
    }


def handle_error(
    error: Exception,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Log an error and, unless disabled, show it in the Streamlit page.

    Network failures are expected in the field and are shown as warnings,
    not errors.

    Returns:
        The describe_error() summary, for callers that render it themselves
    """
    info = describe_error(error, user_message)

    if log_error:
        logger.error(
            f"[{info['code']}] {info['message']}",
            extra={"details": info["details"]},
            exc_info=error,
        )

    if show_user_message:
        text = info["message"]
        if info["hint"]:
            text = f"{text}. {info['hint']}"
        if info["code"] == "NET_001":
            st.warning(text)
        elif info["recoverable"]:
            st.error(f"Error: {text}")
        else:
            st.error(f"Critical Error: {text}")

        if info["details"] and st.session_state.get("debug_mode", False):
            with st.expander("Error Details", expanded=False):
                st.json(info["details"])

    return info


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    **kwargs,
) -> Optional[T]:
    """
    Call func, handling any error through handle_error.

    Usage:
        view = safe_execute(
            store.apply_selection,
            view, question_id, option_index,
            default=view,
            error_message="Answer could not be saved",
        )
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, user_message=error_message)
        return default


class ErrorContext:
    """
    Context manager for page actions: errors are logged, shown and
    suppressed so the rest of the page still renders.

    Usage:
        with ErrorContext("Loading counties"):
            counties = session.fetch_counties()

    After the block, ``ctx.error`` holds the handled exception (or None).
    """

    def __init__(
        self,
        operation: str,
        success_message: Optional[str] = None,
    ):
        self.operation = operation
        self.success_message = success_message
        self.error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.debug(f"Completed: {self.operation}")
            if self.success_message:
                st.success(self.success_message)
            return False

        if not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        if isinstance(exc_val, CaseFileError):
            handle_error(exc_val)
        else:
            handle_error(exc_val, user_message=f"Error during: {self.operation}")
        return True
