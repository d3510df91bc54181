"""Request-scoped log context backed by contextvars."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_method: ContextVar[Optional[str]] = ContextVar("method", default=None)
_endpoint: ContextVar[Optional[str]] = ContextVar("endpoint", default=None)
_dependency: ContextVar[Optional[str]] = ContextVar("dependency", default=None)

_VARS = {
    "request_id": _request_id,
    "method": _method,
    "endpoint": _endpoint,
    "dependency": _dependency,
}


def set_log_context(
    request_id: Optional[str] = None,
    method: Optional[str] = None,
    endpoint: Optional[str] = None,
    dependency: Optional[str] = None,
) -> None:
    """Set context fields for the current task. None leaves a field unchanged."""
    values = {
        "request_id": request_id,
        "method": method,
        "endpoint": endpoint,
        "dependency": dependency,
    }
    for key, value in values.items():
        if value is not None:
            _VARS[key].set(value)


def get_log_context() -> Dict[str, Optional[str]]:
    """Current context fields (None when unset)."""
    return {key: var.get() for key, var in _VARS.items()}


def clear_log_context() -> None:
    """Reset every context field."""
    for var in _VARS.values():
        var.set(None)


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    """Set context fields for the duration of a block, then restore them."""
    tokens = [
        (_VARS[key], _VARS[key].set(value))
        for key, value in fields.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
