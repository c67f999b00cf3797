from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
import structlog

from catalog_sync.config.settings import get_settings
from catalog_sync.api.routes import health, sync
from catalog_sync.core.logging import setup_logging

# Setup structured logging
setup_logging()
logger = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Catalog Sync API")

    try:
        from catalog_sync.config.database import create_tables
        await create_tables()
        logger.info("Database tables created successfully")
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database setup failed", error=str(e))

    yield
    # Shutdown
    from catalog_sync.config.database import dispose_database
    await dispose_database()
    logger.info("Shutting down API")

app = FastAPI(
    title="Catalog Sync API",
    description="Synchronize catalog configuration, products and stock from the ERP into the shop",
    version="1.0.0",
    lifespan=lifespan
)

# Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(sync.router, prefix="/sync", tags=["synchronization"])

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "catalog_sync.main:app",
        host="0.0.0.0",
        port=settings.API_PORT,
        reload=settings.DEBUG,
        log_config=None  # Use structlog instead
    )
