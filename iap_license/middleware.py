"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from iap_license.exceptions import InvalidClaimError
from iap_license.logging_config import bind_context, clear_context, get_logger
from iap_license.models import HeaderSettings, PurchaseClaim
from iap_license.utils.token_generator import mask_token

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses with correlation IDs.

    Every request gets a request_id bound to all logs emitted while it is
    handled, and echoed back in the X-Request-ID response header.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """
        Args:
            app: Wrapped ASGI application
            include_request_details: Log query string, client host and body size on request start
        """
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log the request around the downstream handler.

        Args:
            request: Incoming HTTP request
            call_next: Downstream middleware or route

        Returns:
            The downstream response, tagged with X-Request-ID
        """
        request_id = str(uuid.uuid4())
        bind_context(request_id=request_id)

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                query_params=str(request.query_params) if request.query_params else None,
                client_host=request.client.host if request.client else "unknown",
                content_length=request.headers.get("content-length"),
            )
        else:
            logger.info("request_started", method=request.method, path=request.url.path)

        start_time = time.time()
        try:
            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            # Lets clients quote the id when reporting a failure
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            # Context vars outlive the request on a reused worker thread
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds per-request business context to the logging context.

    - function: first path segment (verify, scan, meal, ...)
    - order_id / product_id: from the purchase header, when it parses
    - token: truncated bearer token
    """

    def __init__(self, app: ASGIApp, headers: HeaderSettings):
        """
        Args:
            app: Wrapped ASGI application
            headers: Names of the bearer token and purchase claim headers
        """
        super().__init__(app)
        self.headers = headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Bind request context from the path and headers, then call the route.

        Args:
            request: Incoming HTTP request
            call_next: Downstream middleware or route

        Returns:
            The downstream response, unchanged
        """
        segments = [s for s in request.url.path.split("/") if s]
        bind_context(function=segments[0] if segments else "root")

        bearer = request.headers.get(self.headers.token)
        if bearer:
            # Never log the full token
            bind_context(token=mask_token(bearer))

        raw_claim = request.headers.get(self.headers.purchase)
        if raw_claim:
            try:
                claim = PurchaseClaim.from_json(raw_claim, unescape=True)
                bind_context(order_id=claim.order_id, product_id=claim.product_id)
            except InvalidClaimError as e:
                # The route reports the bad claim; only the log context is skipped here
                logger.debug("claim_header_unparseable", error=str(e))

        return await call_next(request)
