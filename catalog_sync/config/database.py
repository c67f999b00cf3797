from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
import structlog

logger = structlog.get_logger()

class Base(DeclarativeBase):
    pass

# Initialize these as None, will be set up conditionally
engine = None
AsyncSessionLocal = None

def normalize_database_url(database_url: str) -> str:
    """Pick the async driver for the configured database"""
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url

def setup_database():
    """Setup database based on environment"""
    global engine, AsyncSessionLocal

    from catalog_sync.config.settings import get_settings
    settings = get_settings()

    database_url = normalize_database_url(settings.DATABASE_URL)

    # Pool sizing depends on the backend
    if "postgresql" in database_url:
        # asyncpg
        engine = create_async_engine(
            database_url,
            echo=settings.DEBUG,
            pool_size=20,  # Up from the default 5
            max_overflow=30,  # Up from the default 10
            pool_timeout=30,  # Seconds to wait for connection
            pool_recycle=3600,  # Recycle hourly
            pool_pre_ping=True,  # Drop dead connections on checkout
            connect_args={
                "server_settings": {
                    "application_name": "catalog_sync",
                    "jit": "off",  # Off for short upsert queries
                }
            }
        )
    else:
        engine = create_async_engine(
            database_url,
            echo=settings.DEBUG,
            pool_pre_ping=True,  # Drop dead connections on checkout
        )

    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,  # Manual flushing for better control
    )

def get_session_factory() -> async_sessionmaker:
    """Return the session factory, creating the engine on first use"""
    if AsyncSessionLocal is None:
        setup_database()
    return AsyncSessionLocal

async def dispose_database():
    """Dispose the engine so the next event loop starts with a fresh pool"""
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None

async def create_tables():
    """Create database tables"""
    if engine is None:
        setup_database()

    # Register models on the metadata
    import catalog_sync.models.database  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

async def get_db():
    """Dependency to get database session"""
    session_factory = get_session_factory()

    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
