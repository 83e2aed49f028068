"""Correlation ids carried through requests, webhooks and background jobs."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def generate_correlation_id(prefix: str = "corr") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    correlation_id_var.set(cid)


@contextmanager
def correlation_scope(cid: Optional[str] = None, prefix: str = "job") -> Iterator[str]:
    """Bind a correlation id for the duration of one unit of background work."""
    token = correlation_id_var.set(cid or generate_correlation_id(prefix))
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)
