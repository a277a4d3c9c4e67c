import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from alerts import ReconciliationAlerter
from api import orders_router, services_router
from config import Settings, load_settings
from database import init_db, init_engine
from errors import InvalidInput, StorageFailure, StorefrontError
from vendor import SMMPanelAdapter
from workflow import OrderWorkflow

logger = logging.getLogger(__name__)


def build_workflow(settings: Settings):
    engine, session_factory = init_engine(settings.database_url)
    adapter = SMMPanelAdapter(
        settings.smm_api_url,
        settings.smm_api_key,
        timeout=settings.vendor_timeout_seconds,
    )
    alerter = ReconciliationAlerter(settings.bot_token, settings.admin_ids)
    workflow = OrderWorkflow(
        session_factory,
        adapter,
        alerter,
        services_cache_seconds=settings.services_cache_seconds,
    )
    return engine, workflow


def create_app(
    settings: Optional[Settings] = None,
    workflow: Optional[OrderWorkflow] = None,
) -> FastAPI:
    """Build the storefront API.

    Pass `workflow` to run against an already wired workflow (tests); otherwise
    everything is built from `settings` / the environment.
    """
    engine = None
    if workflow is None:
        settings = settings or load_settings()
        engine, workflow = build_workflow(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            await init_db(engine)
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="SMM Storefront API", lifespan=lifespan)
    app.state.workflow = workflow

    allow_origins = settings.allowed_origins if settings else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if allow_origins == ["*"]:
        logger.warning(
            "CORS is set to allow all origins with credentials; set ALLOWED_ORIGINS to explicit values."
        )

    app.include_router(services_router)
    app.include_router(orders_router)

    @app.exception_handler(StorefrontError)
    async def _storefront_error(request: Request, exc: StorefrontError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.exception("%s %s hit a database error", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content=StorageFailure("Storage unavailable").to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"Invalid {field}" if field else "Invalid request"
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content=InvalidInput(message).to_dict())

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
