"""Gift the Future Backend API - Main Application"""
import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from giftfuture.config import get_settings
from giftfuture.api.v1.router import api_router
from giftfuture.models.database import init_db, close_db
from giftfuture.services.fulfillment import close_fulfillment_orchestrator
from giftfuture.services.reconciler import start_purchase_reconciler, stop_purchase_reconciler
from giftfuture.services.solana_client import close_solana_client

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Gift the Future API", version=settings.app_version)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Sweep purchases interrupted by a previous shutdown
    if settings.reconciler_enabled:
        try:
            await start_purchase_reconciler()
        except RuntimeError as e:
            # Custody key missing; the API still serves reads
            logger.warning("Purchase reconciler not started", error=str(e))
    else:
        logger.info("Purchase reconciler disabled")

    yield

    # Cleanup
    await stop_purchase_reconciler()
    await close_fulfillment_orchestrator()
    await close_solana_client()
    await close_db()
    logger.info("Gift the Future API shutdown complete")


def create_app() -> FastAPI:
    """Create FastAPI application"""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="API for gifting prediction market positions",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "cluster": settings.solana_cluster,
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "giftfuture.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
