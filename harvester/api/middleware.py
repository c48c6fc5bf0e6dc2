"""
Custom middleware for the FastAPI application
"""
import time
import uuid
import logging
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable

logger = logging.getLogger(__name__)

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log request details and timing
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request.state.request_id = str(uuid.uuid4())

        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"{method} {path} - ERROR: {str(e)} - "
                f"{process_time:.3f}s - IP: {client_ip}"
            )
            raise

        process_time = time.time() - start_time
        logger.info(
            f"{method} {path} - {response.status_code} - "
            f"{process_time:.3f}s - IP: {client_ip}"
        )

        response.headers["X-Request-ID"] = request.state.request_id
        response.headers["X-Process-Time"] = f"{process_time:.3f}"
        return response
