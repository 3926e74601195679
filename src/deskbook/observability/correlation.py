"""Correlation ID scoping for log tracing across one engine flow."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(cid: str | None = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of the block.

    Keeps an already-bound ID when *cid* is None, so nested flows share the
    caller's ID; otherwise generates a fresh one.
    """
    cid = cid or correlation_id_var.get() or str(uuid.uuid4())
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)
