import importlib
import logging
import os
from collections.abc import Iterable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core import db
from restful import Router, RouterOptions, SqlAlchemyModelProvider
from restful.router import build_router

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://127.0.0.1:5173"


def cors_allow_origins() -> list[str]:
    raw = os.environ.get("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def model_modules() -> list[str]:
    raw = os.environ.get("RESTFUL_MODEL_MODULES", "")
    return [name.strip() for name in raw.split(",") if name.strip()]


def load_models() -> list[type]:
    """
    Import the configured model modules so their classes register on `db.Base`.
    """
    for name in model_modules():
        importlib.import_module(name)
    return db.mapped_models()


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Initialize the DB engine once per process.
    await db.init_engine()
    try:
        if db.sync_on_startup():
            await db.sync_schema()
        yield
    finally:
        await db.close_engine()


def create_app(models: Iterable[type] | None = None, options: RouterOptions | None = None) -> FastAPI:
    restful = Router(
        SqlAlchemyModelProvider(load_models() if models is None else models),
        options if options is not None else RouterOptions.from_env(),
    )
    logger.info("restful_models endpoint=%s models=%s", restful.endpoint, restful.model_names)

    app = FastAPI(lifespan=lifespan)

    # Allow local frontend dev server to call this API from the browser.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(build_router(restful), tags=["restful"])

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/")
    def root() -> dict:
        return {"message": "restful api", "endpoint": restful.endpoint, "models": restful.model_names}

    return app


app = create_app()
