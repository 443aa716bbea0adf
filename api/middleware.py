"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.routes import ENDPOINTS
from connectors.errors import AlloyError

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Attach request logging / timing and the error handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(AlloyError)
    async def alloy_error_handler(request: Request, exc: AlloyError) -> JSONResponse:
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code != 404:
            return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)

        return JSONResponse(
            {
                "success": False,
                "error": "Not Found",
                "message": f"The requested route {request.method} {request.url.path} was not found on this server.",
                "availableEndpoints": ENDPOINTS,
            },
            status_code=404,
        )
