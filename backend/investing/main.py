import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .context import AppContext, build_context
from .routers import cron, market_data, scheduler

logger = logging.getLogger(__name__)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    settings = context.settings if context else get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or build_context(settings)
        app.state.context = ctx
        if ctx.settings.autostart_scheduler:
            ctx.scheduler.start()
        else:
            logger.info("Scheduler autostart disabled; use POST /api/scheduler to start it")
        try:
            yield
        finally:
            ctx.scheduler.shutdown()

    app = FastAPI(
        title="Investing API",
        description="Portfolio tracking backend: market-data ingestion and auto-update scheduling",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(scheduler.router, prefix="/api/scheduler", tags=["Scheduler"])
    app.include_router(cron.router, prefix="/api/cron", tags=["Cron"])
    app.include_router(market_data.router, prefix="/api/market-data", tags=["Market data"])

    @app.get("/")
    async def root():
        return {"message": "Welcome to Investing API", "docs": "/docs"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
