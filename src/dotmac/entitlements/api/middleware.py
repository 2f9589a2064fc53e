"""
Error handling and request logging for the billing API.
"""

import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from dotmac.entitlements.exceptions import EntitlementError

logger = structlog.get_logger(__name__)


class EntitlementErrorMiddleware(BaseHTTPMiddleware):
    """
    Converts domain errors to JSON responses and tags requests with a correlation ID.

    Unexpected exceptions are logged with their traceback and answered with a
    generic 500 so internals never leak to clients.
    """

    def __init__(
        self,
        app,
        correlation_header: str = "X-Correlation-ID",
        path_prefix: str = "/api/v1/billing",
    ):
        super().__init__(app)
        self.correlation_header = correlation_header
        self.path_prefix = path_prefix

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(self.correlation_header, str(uuid.uuid4()))
        request.state.correlation_id = correlation_id
        # Every log line emitted while serving this request carries the ID
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        context = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }

        start_time = time.time()
        try:
            response = await call_next(request)
            if request.url.path.startswith(self.path_prefix):
                logger.info(
                    "Billing request completed",
                    **context,
                    tenant_id=getattr(request.state, "tenant_id", None),
                    status_code=response.status_code,
                    duration=time.time() - start_time,
                )
            return response

        except EntitlementError as e:
            log = logger.warning if e.status_code < 500 else logger.error
            log(
                "Entitlement error occurred",
                **context,
                tenant_id=getattr(request.state, "tenant_id", None),
                error_code=e.error_code,
                error_message=e.message,
                error_context=e.context,
                duration=time.time() - start_time,
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": e.to_dict(),
                    "correlation_id": correlation_id,
                    "request_path": request.url.path,
                },
                headers={self.correlation_header: correlation_id},
            )
        except Exception as e:
            logger.exception(
                "Unexpected error in billing request",
                **context,
                error=str(e),
                duration=time.time() - start_time,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": {
                        "error_code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred processing your request",
                        "status_code": 500,
                        "recovery_hint": (
                            "Please try again later or contact support if the issue persists"
                        ),
                    },
                    "correlation_id": correlation_id,
                    "request_path": request.url.path,
                },
                headers={self.correlation_header: correlation_id},
            )
        finally:
            structlog.contextvars.unbind_contextvars("correlation_id")
