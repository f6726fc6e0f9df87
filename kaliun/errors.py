"""Error taxonomy and the JSON handlers that render it."""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

# Bearer failure codes, so a client can pick refresh-and-retry over re-auth
TOKEN_EXPIRED = "TOKEN_EXPIRED"
TOKEN_INVALID = "TOKEN_INVALID"


class KaliunError(Exception):
    """Base for every expected failure. `code` is the stable `error` string."""

    status_code = 400
    code = "error"

    def __init__(self, message: str = "", code: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.code
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def body(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationFailed(KaliunError):
    status_code = 400
    code = "invalid_request"


class NotFound(KaliunError):
    status_code = 404
    code = "not_found"


class Conflict(KaliunError):
    status_code = 409
    code = "conflict"


class Unauthorized(KaliunError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason

    def body(self) -> dict:
        body = super().body()
        if self.reason:
            body["code"] = self.reason
        return body


class Forbidden(KaliunError):
    status_code = 403
    code = "forbidden"


class OAuthError(KaliunError):
    """RFC 6749 / 8628 token endpoint error (`invalid_grant`, `expired_token`, ...)."""

    status_code = 400

    def body(self) -> dict:
        return {"error": self.code, "error_description": self.message}


class Pending(OAuthError):
    """Not a failure: the device should keep polling."""

    code = "authorization_pending"


class Internal(KaliunError):
    """Storage unavailable or similar. Transient, safe to retry."""

    status_code = 500
    code = "internal_error"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(KaliunError)
    async def _kaliun_error_handler(_: Request, exc: KaliunError):
        return JSONResponse(status_code=exc.status_code, content=exc.body())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_request", "message": "Invalid fields: " + ", ".join(fields)},
        )

    @app.exception_handler(OperationalError)
    async def _storage_error_handler(_: Request, exc: OperationalError):
        logger.error("Storage unavailable: %s", exc)
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Storage unavailable"})
