"""
Request context for correlating log lines of one analysis request.

Every ``process_contract`` call runs in its own asyncio task context, so
binding the request id through contextvars never leaks between
concurrent requests.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def new_request_id() -> str:
    return f"analysis_{uuid.uuid4().hex[:12]}"


def get_request_id() -> Optional[str]:
    """Get the current request ID."""
    return request_id_var.get()


@contextmanager
def request_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a request ID for the duration of a ``with`` block.

    The previous value is restored on exit, so nested scopes behave.
    """
    request_id = request_id or new_request_id()
    token = request_id_var.set(request_id)
    with structlog.contextvars.bound_contextvars(request_id=request_id):
        try:
            yield request_id
        finally:
            request_id_var.reset(token)
