"""
=============================================================================
KMS Server - Application (app.py)
=============================================================================

FastAPI application factory used by ``startcmd.start_server``.

The application carries the selected storage provider, secret lock and
outbound TLS context on ``app.state`` for the key management routers mounted
by the hosting deployment.  Itself it provides:

  - ``GET /healthcheck``
  - the ``{"errMessage": ...}`` error body for every HTTP error
  - optional CORS (``--enable-cors``)
  - request counting for the metrics endpoint
"""

from __future__ import annotations

import datetime
import logging
import ssl
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

import metrics
from errors import error_response
from parameters import ServerParameters
from storage import StorageProvider

logger = logging.getLogger("kms-server.app")


def create_app(
    params: ServerParameters,
    *,
    storage: Optional[StorageProvider] = None,
    secret_lock=None,
    tls_context: Optional[ssl.SSLContext] = None,
) -> FastAPI:
    app = FastAPI(
        title="KMS Server",
        description="Key management and crypto operations server",
        version="1.0.0",
    )
    app.state.params = params
    app.state.storage = storage
    app.state.secret_lock = secret_lock
    app.state.tls_context = tls_context

    if params.enable_cors:
        logger.info("CORS enabled for all origins")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return error_response(422, f"invalid request: {exc.errors()}")

    @app.middleware("http")
    async def _count_requests(request: Request, call_next):
        response = await call_next(request)
        metrics.record_request(request.method, response.status_code)
        return response

    @app.get("/healthcheck")
    def healthcheck() -> dict:
        return {
            "status": "success",
            "currentTime": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    return app
