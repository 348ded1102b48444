from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass, field
import logging
import time
from typing import Optional

from .constants import ANONYMOUS_IDENTITY


@dataclass
class RequestContext:
    """Per-request analytics metadata. Created on entry, dropped after the response."""

    request_id: str
    session_id: str
    identity: str = ANONYMOUS_IDENTITY
    method: str = ""
    path: str = ""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    do_not_track: bool = False
    start_time: float = field(default_factory=time.perf_counter)

    @property
    def is_anonymous(self) -> bool:
        return self.identity == ANONYMOUS_IDENTITY

    def elapsed_ms(self, now: Optional[float] = None) -> float:
        current = time.perf_counter() if now is None else now
        return (current - self.start_time) * 1000


_request_context_var: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def set_request_context(context: Optional[RequestContext]) -> Token[Optional[RequestContext]]:
    return _request_context_var.set(context)


def reset_request_context(token: Token[Optional[RequestContext]]) -> None:
    _request_context_var.reset(token)


def get_request_context() -> Optional[RequestContext]:
    return _request_context_var.get()


def get_request_id_value(default: str = "no-request") -> str:
    context = _request_context_var.get()
    return context.request_id if context and context.request_id else default


def get_identity(default: str = ANONYMOUS_IDENTITY) -> str:
    context = _request_context_var.get()
    return context.identity if context else default


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _request_context_var.get()
        if not hasattr(record, "request_id"):
            record.request_id = context.request_id if context else "no-request"
        if not hasattr(record, "session_id"):
            record.session_id = context.session_id if context else "no-session"
        return True


def attach_request_id_filter(logger: Optional[logging.Logger] = None) -> None:
    target = logger or logging.getLogger()
    for handler in target.handlers:
        handler.addFilter(RequestIdFilter())
