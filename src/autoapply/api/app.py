from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from autoapply.api.routes import router as api_router
from autoapply.config import get_settings
from autoapply.db.init import init_database
from autoapply.errors import AutoApplyError
from autoapply.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        result = init_database()
        logger.info("Control API ready env=%s tables=%s", settings.app_env, result["tables"])

    @app.exception_handler(AutoApplyError)
    def _workflow_error(_: Request, exc: AutoApplyError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "error": exc.__class__.__name__})

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "env": settings.app_env})

    app.include_router(api_router)
    return app
