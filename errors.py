"""
Error taxonomy for the checkout flow and the handlers that render it.

Business and validation errors carry a message meant for the caller and are
returned verbatim. Anything else is logged and answered with a generic 500.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ShopError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ShopError):
    status_code = 400
    code = "validation_error"


class MissingFieldsError(ValidationError):
    def __init__(self, missing: List[str]):
        super().__init__(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
        self.missing = missing


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class Unauthorized(ShopError):
    status_code = 401
    code = "unauthorized"


class Forbidden(ShopError):
    status_code = 403
    code = "forbidden"


class InvalidState(ShopError):
    status_code = 400
    code = "invalid_state"


class SecurityError(ShopError):
    status_code = 400
    code = "security_error"


class Conflict(ShopError):
    status_code = 409
    code = "conflict"


class GatewayError(ShopError):
    status_code = 502
    code = "gateway_error"


class GatewayTimeout(GatewayError):
    status_code = 504
    code = "gateway_timeout"


async def shop_error_handler(request: Request, exc: ShopError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        fields.append({"field": ".".join(loc), "message": err.get("msg", "")})
    body = ValidationError("Invalid request", details={"fields": fields}).to_dict()
    return JSONResponse(status_code=400, content=body)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": "http_error", "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "server_error", "message": "Internal server error"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShopError, shop_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
