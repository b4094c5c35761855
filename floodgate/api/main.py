from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..agents.orchestrator import DefenseService, build_service
from ..core.errors import ExecutionError, QueryError, ValidationError
from ..utils.config import AppConfig, load_config
from ..utils.logger import setup_logging
from .endpoints import AppDeps, router


logger = logging.getLogger(__name__)


def create_app(cfg: Optional[AppConfig] = None, service: Optional[DefenseService] = None) -> FastAPI:
    cfg = cfg or load_config()
    setup_logging(level=str(cfg.get("app", "log_level", default="INFO")))

    app = FastAPI(title="Floodgate API", version="0.1.0")

    service = service or build_service(cfg)
    app.state.deps = AppDeps(service=service, api_key=cfg.api_key)

    @app.on_event("startup")
    async def _startup() -> None:
        await service.start()
        logger.info("api_started")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await service.stop()
        logger.info("api_stopped")

    @app.exception_handler(ValidationError)
    async def _invalid_address(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": "invalid_address", "error": str(exc)})

    @app.exception_handler(ExecutionError)
    async def _enforcement_failed(request: Request, exc: ExecutionError):
        logger.error("enforcement_failed", extra={"path": request.url.path, "err": str(exc), "exit_code": exc.exit_code})
        return JSONResponse(
            status_code=502,
            content={"detail": "enforcement_failed", "error": str(exc), "exit_code": exc.exit_code, "output": exc.output},
        )

    @app.exception_handler(QueryError)
    async def _traffic_unavailable(request: Request, exc: QueryError):
        logger.error("traffic_source_unavailable", extra={"path": request.url.path, "err": str(exc)})
        return JSONResponse(status_code=503, content={"detail": "traffic_source_unavailable", "error": str(exc)})

    app.include_router(router)
    return app


app = create_app()
