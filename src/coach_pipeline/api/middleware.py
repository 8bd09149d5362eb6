from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response

from coach_pipeline.utils.log import logger, set_request_id, set_user_id

_QUIET_PATHS = frozenset({"/health", "/metrics"})


async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Bind a request id (client-supplied X-Request-ID or a fresh one) for the
    duration of the request, echo it on the response, and log one line per call.
    """
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex
    set_request_id(rid)
    set_user_id(None)
    request.state.request_id = rid
    t0 = time.perf_counter()
    try:
        resp = await call_next(request)
        resp.headers.setdefault("x-request-id", rid)
        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "http_request",
                method=request.method,
                path=request.url.path,
                status=resp.status_code,
                ms=round((time.perf_counter() - t0) * 1000, 1),
            )
        return resp
    finally:
        set_request_id(None)
        set_user_id(None)
