"""
FastAPI application entry point for the Social Ape API.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from socialape.config import get_settings
from socialape.errors import ApiError
from socialape.routes import router

logger = logging.getLogger(__name__)

REQUEST_LOCATIONS = ("body", "query", "path", "header")


async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.body)
    return JSONResponse(status_code=exc.status_code, content=exc.body)


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed input as ``{field: message}`` with status 400."""
    errors: dict[str, str] = {}
    for error in exc.errors():
        loc = [part for part in error.get("loc", ()) if part not in REQUEST_LOCATIONS]
        # Malformed JSON reports a character offset instead of a field name.
        field = loc[-1] if loc and isinstance(loc[-1], str) else "error"
        errors.setdefault(field, error.get("msg", "Invalid value"))
    return JSONResponse(status_code=400, content=errors)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Something went wrong"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Social Ape API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
