"""
Error taxonomy for the API.

Every error is an HTTPException so handlers can simply ``raise`` it the way
FastAPI code usually does; ``install_handlers`` renders them (and upstream
driver/gateway failures) as ``{"code": <status>, "message": <text>}``.
"""
import logging

import stripe
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class Unauthenticated(HTTPException):
    def __init__(self, message: str = "Unauthorized access"):
        super().__init__(status_code=401, detail=message, headers={"WWW-Authenticate": "Bearer"})


class MissingToken(Unauthenticated):
    def __init__(self):
        super().__init__("Missing token")


class InvalidToken(Unauthenticated):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class Forbidden(HTTPException):
    def __init__(self, message: str = "Forbidden access"):
        super().__init__(status_code=403, detail=message)


class NotFound(HTTPException):
    def __init__(self, message: str = "Not found"):
        super().__init__(status_code=404, detail=message)


class OrderNotFound(NotFound):
    def __init__(self):
        super().__init__("Order not found")


class Conflict(HTTPException):
    def __init__(self, message: str):
        super().__init__(status_code=409, detail=message)


class ValidationError(HTTPException):
    def __init__(self, message: str):
        super().__init__(status_code=422, detail=message)


class UpstreamFailure(HTTPException):
    def __init__(self, message: str = "Upstream service failed", status_code: int = 502):
        super().__init__(status_code=status_code, detail=message)


def error_body(code: int, message) -> dict:
    return {"code": code, "message": message}


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    return JSONResponse(status_code=422, content=error_body(422, "; ".join(problems) or "Invalid request"))


async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=502, content=error_body(502, "Database unavailable"))


async def gateway_error_handler(request: Request, exc: stripe.StripeError):
    logger.exception("Payment gateway failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=502, content=error_body(502, "Payment gateway error"))


def install_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
    app.add_exception_handler(stripe.StripeError, gateway_error_handler)
