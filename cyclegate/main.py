import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import models  # noqa: F401  registers tables on Base.metadata
from .config import Settings, get_settings
from .db import Base, build_engine, build_session_factory
from .exceptions import CycleGateError, cyclegate_exception_handler
from .middleware import RequestIDMiddleware
from .routers import account, content, observability, progress, stripe


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    engine = build_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.auto_create_schema:
            Base.metadata.create_all(bind=engine)
        yield
        engine.dispose()

    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    app.add_exception_handler(CycleGateError, cyclegate_exception_handler)

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(account.router, prefix="/account", tags=["account"])
    app.include_router(content.router, prefix="/content", tags=["content"])
    app.include_router(progress.router, prefix="/me", tags=["progress"])
    app.include_router(stripe.router, prefix="/stripe", tags=["stripe"])
    app.include_router(observability.router, prefix="/ops", tags=["observability"])

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    return app


app = create_app()
