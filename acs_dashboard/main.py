from __future__ import annotations

import logging
from typing import Dict

from dotenv import load_dotenv

# Load .env before settings are read anywhere downstream.
load_dotenv()

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from acs_dashboard.clients.backend import BackendClient
from acs_dashboard.config import settings
from acs_dashboard.db import get_db, init_db
from acs_dashboard.routers import auth as auth_router
from acs_dashboard.routers import dashboard as dashboard_router
from acs_dashboard.routers import db as db_router
from acs_dashboard.routers import lcp as lcp_router
from acs_dashboard.routers import usage as usage_router
from acs_dashboard.routers.errors import http_exception_handler, validation_exception_handler

logger = logging.getLogger("acs.dashboard.main")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Upstream proxies
    app.include_router(lcp_router.router)
    app.include_router(db_router.router)
    app.include_router(usage_router.router)
    app.include_router(auth_router.router)

    # Aggregated dashboard views
    app.include_router(dashboard_router.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Starting %s (environment=%s)...", settings.app_name, settings.environment)
        init_db()
        app.state.backend_client = BackendClient()
        logger.info("Backend API at %s", settings.api_url)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        client = getattr(app.state, "backend_client", None)
        if client is not None:
            await client.aclose()
            app.state.backend_client = None
        logger.info("%s stopped.", settings.app_name)

    @app.get("/healthz")
    def healthcheck(db: Session = Depends(get_db)) -> Dict[str, str]:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "app": settings.app_name, "database": "ok"}

    return app


app = create_app()
