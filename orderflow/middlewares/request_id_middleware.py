import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from orderflow.common.constants import REQUEST_ID_HEADER, request_id_ctx
from orderflow.common.logging_setup import get_logger

logger = get_logger("orderflow.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):

        req_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = request_id_ctx.set(req_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = req_id
            logger.info(
                "request.completed",
                extra={"method": request.method, "path": request.url.path, "status_code": response.status_code,
                       "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
            )
            return response
        finally:
            request_id_ctx.reset(token)
