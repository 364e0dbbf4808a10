"""Exception handlers mapping engine errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ctms.engine.errors import AuthorizationDenied, CTMSError, ReferentialError, ValidationError

logger = logging.getLogger("ctms.api")


async def ctms_error_handler(request: Request, exc: CTMSError) -> JSONResponse:
    body = {"message": exc.message, "code": exc.code}
    if isinstance(exc, AuthorizationDenied):
        body["reason"] = exc.reason
    elif isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    elif isinstance(exc, ReferentialError):
        body["missing_ids"] = exc.missing_ids
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "message": "Invalid request",
            "code": "VALIDATION_ERROR",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CTMSError, ctms_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
