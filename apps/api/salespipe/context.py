from __future__ import annotations

import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Inbound ids end up in logs, spans, audit rows and event envelopes.
_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def accept_correlation_id(candidate: str | None) -> str:
    """Keep a well-formed inbound id, otherwise mint a new one."""
    if candidate and _CORRELATION_ID_PATTERN.match(candidate):
        return candidate
    return str(uuid.uuid4())


@contextmanager
def correlation_scope(value: str) -> Iterator[str]:
    token = set_correlation_id(value)
    try:
        yield value
    finally:
        reset_correlation_id(token)
