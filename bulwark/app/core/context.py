"""Per-request context propagated through async call chains."""

from contextvars import ContextVar
from typing import Optional

# Coroutine-local request id, read by the logging ContextFilter
_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_current_request_id() -> Optional[str]:
    """Get the request id of the request being processed, if any."""
    return _request_id_var.get()


def set_current_request_id(request_id: Optional[str]) -> None:
    """Set the request id for the current async context.

    Args:
        request_id: Request id to set, or None to clear
    """
    _request_id_var.set(request_id)
