from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class HubError(Exception):
    """Base class for errors that map onto the JSON error envelope."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return error_body(self.message, self.status_code, self.details)

    def describe(self) -> str:
        """Message plus the provider's error details, for logs and stored diagnostics."""
        if self.details in (None, "", {}, []):
            return self.message
        details = self.details if isinstance(self.details, str) else json.dumps(self.details, default=str)
        return f"{self.message}: {details}"


class ValidationError(HubError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(HubError):
    status_code = 401
    default_message = "Unauthorized"


class TokenExchangeFailed(HubError):
    """The provider token endpoint rejected an authorization code."""

    status_code = 400
    default_message = "Failed to exchange authorization code"


class TokenRefreshFailed(HubError):
    """The provider token endpoint rejected a refresh token."""

    status_code = 400
    default_message = "Failed to refresh access token"


class IntegrationNotFound(HubError):
    status_code = 404
    default_message = "Integration not found"


class NotificationNotFound(HubError):
    status_code = 404
    default_message = "Notification not found"


class PersistenceFailed(HubError):
    status_code = 500
    default_message = "Failed to store data"


class UpstreamFetchFailed(HubError):
    """A provider data API call failed while the token was valid."""

    status_code = 502
    default_message = "Failed to fetch data from provider"


def error_body(message: str, status: int, details: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": message, "status": status}
    if details is not None:
        body["details"] = details
    return body


def register_error_handlers(app: FastAPI) -> None:
    """Render every failure as ``{error, status, details?}``."""

    @app.exception_handler(HubError)
    async def hub_error_handler(request: Request, exc: HubError):
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), exc.status_code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_body("Invalid request body", 400, jsonable_errors(exc)),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error", 500, type(exc).__name__),
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
