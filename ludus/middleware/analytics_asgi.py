"""
Pure ASGI analytics middleware.

Resolves who is calling and which session the call belongs to, then emits
request lifecycle events without holding up the response:

- ``api_request`` before the app runs
- ``page_view`` for browser navigations (``Accept: text/html``), emitted on
  completion so it carries the matched path params
- ``api_response`` once the response has been fully sent, followed by
  ``api_error`` or ``api_success``
- a medium-severity ``error`` event for responses over the slow threshold

Completion is observed through the wrapped ``send`` callable, so nothing here
depends on how a route builds its response.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import parse_qsl

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send
import ulid

from ..core.config import settings
from ..core.constants import ANONYMOUS_IDENTITY, REQUEST_ID_HEADER, SESSION_ID_HEADER, USER_ID_HEADER
from ..core.enums import EventSeverity
from ..core.request_context import RequestContext, reset_request_context, set_request_context
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id(now_ms: Optional[int] = None) -> str:
    """``session_<epoch ms>_<9 random base36 chars>``."""
    millis = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"session_{millis}_{suffix}"


def _resolve_identity(scope: Scope, headers: Headers) -> str:
    state = scope.get("state") or {}
    user_id = state.get("user_id")
    if user_id:
        return str(user_id)

    user = scope.get("user")
    if user is not None and getattr(user, "is_authenticated", False):
        identity = getattr(user, "identity", None) or getattr(user, "id", None)
        if identity:
            return str(identity)

    return headers.get(USER_ID_HEADER) or ANONYMOUS_IDENTITY


def _client_ip(scope: Scope, headers: Headers) -> Optional[str]:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else None


class AnalyticsMiddlewareASGI:
    """
    Pure ASGI middleware that instruments every HTTP request.

    The analytics service is looked up on ``app.state`` per request unless one
    is passed in, so the middleware can be installed before the lifespan has
    built it.
    """

    def __init__(
        self,
        app: ASGIApp,
        analytics: Optional[AnalyticsService] = None,
        *,
        skip_paths: Optional[Sequence[str]] = None,
        slow_threshold_ms: Optional[float] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.app = app
        self._analytics = analytics
        self.skip_paths: List[str] = list(skip_paths if skip_paths is not None else settings.skip_paths)
        self.slow_threshold_ms = (
            settings.slow_response_threshold_ms if slow_threshold_ms is None else slow_threshold_ms
        )
        self._clock = clock

    def _service_for(self, scope: Scope) -> Optional[AnalyticsService]:
        if self._analytics is not None:
            return self._analytics
        app = scope.get("app")
        state = getattr(app, "state", None)
        return getattr(state, "analytics_service", None)

    def _skipped(self, path: str) -> bool:
        return any(path == skip or path.startswith(skip.rstrip("/") + "/") for skip in self.skip_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if self._skipped(path):
            await self.app(scope, receive, send)
            return

        analytics = self._service_for(scope)
        headers = Headers(scope=scope)
        method = scope.get("method", "")

        context = RequestContext(
            request_id=headers.get(REQUEST_ID_HEADER) or str(ulid.ULID()),
            session_id=headers.get(SESSION_ID_HEADER) or generate_session_id(),
            identity=_resolve_identity(scope, headers),
            method=method,
            path=path,
            ip_address=analytics.client_ip(_client_ip(scope, headers)) if analytics else None,
            user_agent=headers.get("user-agent"),
            do_not_track=headers.get("dnt") == "1",
            start_time=self._clock(),
        )
        scope.setdefault("state", {})["analytics"] = context
        token = set_request_context(context)

        tracking = analytics is not None and analytics.should_track_request(context.do_not_track)
        query = dict(parse_qsl(scope.get("query_string", b"").decode("latin-1")))

        if analytics is not None and tracking:
            analytics.dispatch(
                analytics.track_request_event(
                    "api_request",
                    context.identity,
                    {
                        "method": method,
                        "path": path,
                        "query": query,
                        "session_id": context.session_id,
                        "ip_address": context.ip_address,
                        "user_agent": context.user_agent,
                    },
                )
            )

        page_view: Optional[Dict[str, Any]] = None
        if "text/html" in headers.get("accept", ""):
            page_view = {"referrer": headers.get("referer"), "query": query}

        status_code = 500
        content_length = 0
        completed = False

        def complete(final_status: int) -> None:
            nonlocal completed
            if completed:
                return
            completed = True
            self._on_complete(
                analytics if tracking else None,
                scope,
                context,
                final_status,
                content_length,
                page_view=page_view,
            )

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, content_length
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
                MutableHeaders(scope=message)[SESSION_ID_HEADER] = context.session_id
            elif message["type"] == "http.response.body":
                content_length += len(message.get("body", b""))
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                complete(status_code)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            complete(500)
            raise
        finally:
            if not completed:
                # Client went away before the final body message
                complete(status_code)
            reset_request_context(token)

    def _on_complete(
        self,
        analytics: Optional[AnalyticsService],
        scope: Scope,
        context: RequestContext,
        status_code: int,
        content_length: int,
        page_view: Optional[Dict[str, Any]] = None,
    ) -> None:
        elapsed_ms = context.elapsed_ms(self._clock())
        route = scope.get("route")
        endpoint = getattr(route, "path", None) or context.path
        prometheus_metrics.record_http_request(
            context.method, endpoint, elapsed_ms / 1000, status_code
        )

        slow = elapsed_ms > self.slow_threshold_ms
        if slow:
            logger.warning(
                "Slow API response: %s %s took %dms", context.method, context.path, elapsed_ms
            )
            prometheus_metrics.inc_slow_request(context.method, endpoint)

        if analytics is None:
            return

        response_ms = round(elapsed_ms, 2)
        if page_view is not None:
            # Path params are only known once the router has matched
            analytics.dispatch(
                analytics.track_page_view(
                    context.identity,
                    context.session_id,
                    context.path,
                    referrer=page_view["referrer"],
                    properties={
                        "method": context.method,
                        "query": page_view["query"],
                        "params": dict(scope.get("path_params") or {}),
                        "status_code": status_code,
                    },
                )
            )

        analytics.dispatch(
            analytics.track_request_event(
                "api_response",
                context.identity,
                {
                    "method": context.method,
                    "path": context.path,
                    "status_code": status_code,
                    "response_time_ms": response_ms,
                    "content_length": content_length,
                    "session_id": context.session_id,
                },
            )
        )

        if slow and analytics.config.analytics_performance_tracking:
            analytics.dispatch(
                analytics.track_error(
                    f"Slow API response: {context.method} {context.path} took {int(elapsed_ms)}ms",
                    context.identity,
                    {
                        "method": context.method,
                        "path": context.path,
                        "response_time_ms": response_ms,
                        "status_code": status_code,
                    },
                    EventSeverity.MEDIUM,
                )
            )

        outcome: Dict[str, Any] = {
            "method": context.method,
            "path": context.path,
            "status_code": status_code,
            "response_time_ms": response_ms,
            "session_id": context.session_id,
        }
        analytics.dispatch(
            analytics.track_request_event(
                "api_error" if status_code >= 400 else "api_success", context.identity, outcome
            )
        )
