from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager

# Correlation id for the call in flight; blank outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")


@contextmanager
def request_scope(request_id: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with ``request_id``."""
    token = request_id_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_var.reset(token)
