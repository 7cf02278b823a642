from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import time
import uuid

REQUEST_ID_HEADER = "X-Request-ID"

request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id for the duration of each request and writes one access line.

    The id comes from the caller's X-Request-ID header when present (page renderers
    forward the visitor's edge id), otherwise a short random one is generated.
    It is echoed back on the response.
    """

    @classmethod
    def request_id_context(cls):
        return request_id_context

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        token = request_id_context.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s failed after %.1fms", request.method, request.url.path,
                             (time.perf_counter() - started) * 1000)
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info("%s %s -> %d in %.1fms", request.method, request.url.path, response.status_code,
                        (time.perf_counter() - started) * 1000)
            return response
        finally:
            request_id_context.reset(token)
