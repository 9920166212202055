import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from agromart import config

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Error with an HTTP status and a machine-readable code."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code or ("INTERNAL_SERVER_ERROR" if status_code >= 500 else "ERROR")
        self.details = details


def not_found(resource: str, resource_id: Optional[str] = None) -> AppError:
    message = f"{resource} with ID '{resource_id}' not found" if resource_id else f"{resource} not found"
    return AppError(message, 404, "RESOURCE_NOT_FOUND", {"resource": resource, "id": resource_id})


def error_body(code: str, message: str, details: Any = None) -> dict:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "message": message, "error": error}


def _field_name(loc) -> str:
    parts = [str(p) for p in loc]
    if parts and parts[0] in ("body", "query", "path", "header"):
        parts = parts[1:]
    return ".".join(parts)


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.details))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": _field_name(err.get("loc", ())), "message": err.get("msg", "Invalid value")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=error_body("VALIDATION_ERROR", "Invalid request", details))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        code, message = "ROUTE_NOT_FOUND", f"Route not found: {request.method} {request.url.path}"
    elif exc.status_code == 405:
        code, message = "METHOD_NOT_ALLOWED", str(exc.detail)
    else:
        code, message = "HTTP_ERROR", str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content=error_body(code, message), headers=exc.headers)


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content=error_body("DUPLICATE_ENTRY", "This record already exists"))


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "An unexpected error occurred" if config.IS_PRODUCTION else str(exc) or exc.__class__.__name__
    return JSONResponse(status_code=500, content=error_body("INTERNAL_SERVER_ERROR", message))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
