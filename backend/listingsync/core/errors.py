# listingsync/core/errors.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("lsync.errors")


class APIError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 400, data=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.data = data


def error_body(code: str, message: str, data=None) -> dict:
    return {"error": {"code": code, "message": message, "data": data}}


def error_response(exc: APIError) -> JSONResponse:
    """For handlers that must keep their writes: returning does not roll the session back, raising does."""
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.data))


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def _api_error_handler(_: Request, exc: APIError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_body("bad_request", "Invalid request.", {"errors": jsonable_encoder(exc.errors())}),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body(
                "server_error",
                "Internal server error.",
                {"detail": (str(exc) or exc.__class__.__name__)[:200]},
            ),
        )
