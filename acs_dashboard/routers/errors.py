from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from acs_dashboard.clients.backend import BackendError

logger = logging.getLogger("acs.dashboard.routers.errors")

UNAUTHORIZED_SESSION = "Unauthorized - Session expired or invalid"


def bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def backend_http_error(exc: BackendError, message: Optional[str] = None) -> HTTPException:
    """
    Map a backend failure onto the status the caller sees.

    401 always passes through so the frontend can send the user to login.
    """
    if exc.is_unauthorized:
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=UNAUTHORIZED_SESSION)
    return HTTPException(status_code=exc.status_code, detail=message or exc.detail)


def internal_error(message: str = "Internal server error") -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Rejected request to %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "Invalid request",
            "details": jsonable_encoder(exc.errors()),
        },
    )
